"""Shared sample patches."""

from __future__ import annotations

import pytest

PARENT = "a3f1c2d4e5b6a7980123456789abcdef01234567"

SAMPLE_PATCH = f"""From 9c1e5d0b6b0d4f3a2e1c7b8a9d0e1f2a3b4c5d6e Mon Sep 17 00:00:00 2001
From: Ada Lovelace <ada@example.com>
Date: Tue, 3 Oct 2023 10:12:44 +0200
Subject: [PATCH] {PARENT} share

---
 README.md | 3 ++-
 src/app.js | 2 +-
 2 files changed, 3 insertions(+), 2 deletions(-)

diff --git a/README.md b/README.md
index 1111111..2222222 100644
--- a/README.md
+++ b/README.md
@@ -1,3 +1,4 @@
 # App
-Old line
+New line
+Another line
 end
diff --git a/src/app.js b/src/app.js
index 3333333..4444444 100644
--- a/src/app.js
+++ b/src/app.js
@@ -10,3 +10,3 @@ function main() {{
   const a = 1;
-  const b = 2;
+  const b = 3;
   return a + b;
--{' '}
2.42.0
"""


@pytest.fixture
def sample_patch_src() -> str:
    return SAMPLE_PATCH


@pytest.fixture
def sample_parent() -> str:
    return PARENT
