"""
patchnet CLI — share patches for local git projects over relay topics.

Commands:
  patchnet init        - Register a local project for sharing and print its link
  patchnet link        - Print a project's shareable link
  patchnet subscribe   - Register a remote project from its link
  patchnet projects    - List registered projects
  patchnet delete      - Delete a project and its received patches
  patchnet patches     - List received patches with their trust status
  patchnet show        - Show one patch
  patchnet hunks       - Show the hunks a patch makes to one file
  patchnet trust       - Trust the key a patch was sent with
  patchnet untrust     - Forget the trusted key of an author
  patchnet keys        - List trusted authors
  patchnet discard     - Remove a received patch
  patchnet apply       - Apply a received patch (git am)
  patchnet publish     - Commit local changes and broadcast them
  patchnet status      - Show git status of a project
  patchnet user        - Show or set the git author identity
  patchnet node start  - Start the patchnet node (foreground)
  patchnet node status - Show node identity and config
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path


def _fail(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(1)


def _config(args: argparse.Namespace) -> dict:
    from patchnet.node import _load_config

    path = Path(args.config).expanduser() if getattr(args, "config", None) else None
    return _load_config(path)


def _store(args: argparse.Namespace):
    from patchnet.store import KVStore

    root = getattr(args, "store", None) or _config(args)["store_root"] or None
    return KVStore(root)


def _get_project(store, bundle_id: str):
    from patchnet.projects import ProjectRegistry
    from patchnet.store import NotFound

    try:
        return ProjectRegistry(store).get(bundle_id)
    except NotFound:
        _fail(f"Unknown project: {bundle_id}")


def _get_patch(store, bundle_id: str, patch_ref: str):
    from patchnet.ingest import PatchInbox
    from patchnet.store import NotFound

    try:
        return PatchInbox(store).resolve(bundle_id, patch_ref)
    except NotFound:
        _fail(f"No patch {patch_ref!r} in {bundle_id}")
    except ValueError as e:
        _fail(str(e))


def cmd_init(args: argparse.Namespace) -> None:
    """Register a local project and print the link to share it."""
    from patchnet.projects import ProjectRegistry

    config = _config(args)
    registry = ProjectRegistry(_store(args))
    project = registry.create(
        args.path,
        bundle_id=args.bundle_id,
        cluster_label=args.cluster or config["cluster_label"],
    )
    print(f"Initialised {project.bundle_id}")
    print(f"  path:       {project.path}")
    print(f"  subcluster: {project.subcluster_hex}")
    print(f"  link:       {project.link}")
    print()
    print("Share the link only with people who should receive your patches.")


def cmd_link(args: argparse.Namespace) -> None:
    from patchnet.projects import ProjectRegistry

    store = _store(args)
    _get_project(store, args.bundle_id)
    print(ProjectRegistry(store).link_for(args.bundle_id))


def cmd_subscribe(args: argparse.Namespace) -> None:
    """Register a remote project from its link."""
    from patchnet.identity import parse_link
    from patchnet.projects import ProjectRegistry

    parsed = parse_link(args.link)
    path = args.path or str(Path.cwd() / parsed.bundle_id)
    project = ProjectRegistry(_store(args)).subscribe(args.link, path)
    print(f"Subscribed to {project.bundle_id}")
    print(f"  path:       {project.path}")
    print(f"  subcluster: {project.subcluster_hex}")
    print("Run 'patchnet node start' to receive the project and its patches.")


def cmd_projects(args: argparse.Namespace) -> None:
    """List registered projects."""
    from patchnet.ingest import PatchInbox
    from patchnet.projects import ProjectRegistry

    store = _store(args)
    projects = ProjectRegistry(store).list()
    if not projects:
        print("No projects.")
        return

    inbox = PatchInbox(store)
    print(f"{len(projects)} project(s)\n")
    for project in projects:
        state = "published" if project.published else "unpublished"
        print(
            f"  {project.bundle_id}  {state}  "
            f"patches={inbox.count(project.bundle_id)}  {project.path}"
        )


def cmd_delete(args: argparse.Namespace) -> None:
    from patchnet.projects import ProjectRegistry

    store = _store(args)
    _get_project(store, args.bundle_id)
    removed = ProjectRegistry(store).delete(args.bundle_id)
    print(f"Deleted {args.bundle_id} ({removed} patch(es) removed)")


def cmd_patches(args: argparse.Namespace) -> None:
    """List received patches for a project."""
    from patchnet.ingest import PatchInbox
    from patchnet.trust import TrustEngine

    store = _store(args)
    _get_project(store, args.bundle_id)
    patches = PatchInbox(store).list(args.bundle_id)
    if not patches:
        print(f"No patches for {args.bundle_id}.")
        return

    trust = TrustEngine(store)
    print(f"{len(patches)} patch(es) for {args.bundle_id}\n")
    for patch in patches:
        classification = trust.classify(patch)
        print(
            f"  {patch.patch_id[:12]}  {classification.value:<9}  "
            f"{patch.headers.author or '?'}  {patch.headers.subject}"
        )


def cmd_show(args: argparse.Namespace) -> None:
    """Show one received patch."""
    from patchnet.trust import TrustEngine, describe

    store = _store(args)
    patch = _get_patch(store, args.bundle_id, args.patch)
    if args.raw:
        sys.stdout.write(patch.src)
        return

    classification = TrustEngine(store).classify(patch)
    print(f"patch   {patch.patch_id}")
    print(f"from    {patch.headers.author}")
    print(f"date    {patch.headers.date}")
    print(f"parent  {patch.headers.parent}")
    print(f"subject {patch.headers.subject}")
    print(f"key     {patch.public_key.hex() if patch.public_key else '-'}")
    print(f"trust   {classification.value}: {describe(classification)}")
    if patch.summary.strip():
        print()
        print(patch.summary.rstrip())
    print()
    print("files:")
    for path in patch.files:
        print(f"  {path}")


def cmd_hunks(args: argparse.Namespace) -> None:
    from patchnet.patch import extract_hunks

    patch = _get_patch(_store(args), args.bundle_id, args.patch)
    hunks = extract_hunks(patch, args.file)
    if not hunks:
        _fail(f"Patch {patch.patch_id[:12]} does not change {args.file}")
    for hunk in hunks:
        print(hunk.header)
        for line in hunk.change_lines:
            print(line)


def cmd_trust(args: argparse.Namespace) -> None:
    """Trust the key a patch was received with, for its author.

    With ``--toggle`` an author who already has a record is untrusted instead.
    """
    from patchnet.trust import TrustEngine, describe

    store = _store(args)
    patch = _get_patch(store, args.bundle_id, args.patch)
    engine = TrustEngine(store)
    author = patch.headers.author
    if args.toggle:
        try:
            classification = engine.toggle(patch)
        except ValueError as e:
            _fail(str(e))
        verb = "Untrusted" if engine.trusted_key(author) is None else "Trusted"
        print(f"{verb} {author}")
        print(f"  {describe(classification)}")
        return
    if patch.public_key is None:
        _fail(f"Patch {patch.patch_id[:12]} carries no public key")
    engine.trust(author, patch.public_key)
    print(f"Trusted {author}")
    print(f"  key: {patch.public_key.hex()}")


def cmd_untrust(args: argparse.Namespace) -> None:
    from patchnet.trust import TrustEngine

    engine = TrustEngine(_store(args))
    if engine.trusted_key(args.author) is None:
        _fail(f"{args.author} is not trusted")
    engine.untrust(args.author)
    print(f"Untrusted {args.author}")


def cmd_keys(args: argparse.Namespace) -> None:
    from patchnet.trust import TrustEngine

    entries = TrustEngine(_store(args)).list()
    if not entries:
        print("No trusted authors.")
        return
    for author, key_hex in entries:
        print(f"  {key_hex[:16]}...  {author}")


def cmd_discard(args: argparse.Namespace) -> None:
    from patchnet.ingest import PatchInbox

    store = _store(args)
    patch = _get_patch(store, args.bundle_id, args.patch)
    PatchInbox(store).discard(args.bundle_id, patch.patch_id)
    print(f"Discarded {patch.patch_id[:12]}")


def cmd_apply(args: argparse.Namespace) -> None:
    """Apply a received patch to the project's working tree."""
    from patchnet.apply import ApplyConflict, ApplyEngine
    from patchnet.node import git_env
    from patchnet.trust import Classification, TrustEngine, describe

    store = _store(args)
    config = _config(args)
    project = _get_project(store, args.bundle_id)
    patch = _get_patch(store, args.bundle_id, args.patch)

    classification = TrustEngine(store).classify(patch)
    if classification is not Classification.TRUSTED and not args.force:
        _fail(f"{describe(classification)} Use --force to apply anyway.")

    engine = ApplyEngine(git_binary=config["git_binary"], env=git_env(store, config))
    try:
        result = asyncio.run(engine.apply(project, patch))
    except ApplyConflict as e:
        print(e.output, file=sys.stderr)
        paths = e.paths
        if paths:
            print(f"Conflicting files: {', '.join(paths)}", file=sys.stderr)
        _fail(str(e))

    if result.output:
        print(result.output)
    print(f"Applied {patch.patch_id[:12]} to {project.bundle_id} (now at {result.revision[:12]})")


def cmd_publish(args: argparse.Namespace) -> None:
    """Commit the project's changes and broadcast them to its subcluster."""
    from patchnet.node import PatchNode
    from patchnet.p2p.session import BroadcastFailed

    store = _store(args)
    _get_project(store, args.bundle_id)
    relays = args.relay or None
    config_path = Path(args.config).expanduser() if args.config else None

    async def _publish():
        node = PatchNode(store=store, relays=relays, config_path=config_path)
        project = node.registry.get(args.bundle_id)
        if await node.session.connect() == 0:
            raise BroadcastFailed("No relay reachable")
        try:
            return await node.publisher.publish(project)
        finally:
            await node.session.close()

    result = asyncio.run(_publish())
    if not result.published:
        print(f"Nothing to publish for {args.bundle_id}.")
        return
    print(f"Published {result.event} for {args.bundle_id}")
    print(f"  revision: {result.revision}")
    print(f"  event:    {result.event_id}")
    print(f"  size:     {result.size} bytes")


def cmd_status(args: argparse.Namespace) -> None:
    from patchnet.apply import ApplyEngine

    store = _store(args)
    project = _get_project(store, args.bundle_id)
    output = asyncio.run(ApplyEngine(git_binary=_config(args)["git_binary"]).status(project))
    print(output.rstrip() or "Working tree clean.")


def cmd_user(args: argparse.Namespace) -> None:
    """Show or set the git author identity used for published commits."""
    from patchnet.identity import get_user, set_user

    store = _store(args)
    if args.name or args.email:
        set_user(store, args.name or "", args.email or "")
    user = get_user(store)
    if not user:
        print("No author identity set. Use: patchnet user --name NAME --email EMAIL")
        return
    print(f"{user.get('name', '')} <{user.get('email', '')}>")


def cmd_node_start(args: argparse.Namespace) -> None:
    """Start the patchnet node in foreground mode."""
    from patchnet.node import run_node

    run_node(
        relays=args.relay or None,
        config_path=Path(args.config).expanduser() if args.config else None,
        store_root=args.store,
        verbose=args.verbose,
    )


def cmd_node_status(args: argparse.Namespace) -> None:
    """Show node identity and configuration."""
    from patchnet.identity import ensure_identity
    from patchnet.ingest import PatchInbox
    from patchnet.projects import ProjectRegistry

    store = _store(args)
    config = _config(args)
    identity = ensure_identity(store)
    projects = ProjectRegistry(store).list()
    inbox = PatchInbox(store)

    print("patchnet node identity")
    print(f"  pubkey:   {identity.pubkey}")
    print(f"  store:    {store.root}")
    print(f"  projects: {len(projects)}")
    print(f"  patches:  {sum(inbox.count(p.bundle_id) for p in projects)}")
    print(f"  relays:   {len(config['relays'])}")


def main() -> None:
    from patchnet import __version__
    from patchnet.git import GitError
    from patchnet.identity import LinkInvalid
    from patchnet.p2p.protocol import ProtocolError
    from patchnet.p2p.session import BroadcastFailed
    from patchnet.patch import MalformedPatch
    from patchnet.projects import ProjectError
    from patchnet.store import StorageError

    parser = argparse.ArgumentParser(
        prog="patchnet",
        description="patchnet — share and review patches for local git projects.",
    )
    parser.add_argument("--version", action="version", version=f"patchnet {__version__}")
    parser.add_argument("--store", help="Store directory (default ~/.patchnet/store)")
    parser.add_argument("--config", help="Config file (default ~/.patchnet/config.toml)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    p_init = sub.add_parser("init", help="Register a local project for sharing")
    p_init.add_argument("path", nargs="?", default=".", help="Project directory")
    p_init.add_argument("--bundle-id", help="Project id (default: from socket.ini)")
    p_init.add_argument("--cluster", help="Cluster label")

    p_link = sub.add_parser("link", help="Print a project's shareable link")
    p_link.add_argument("bundle_id")

    p_sub = sub.add_parser("subscribe", help="Register a remote project from its link")
    p_sub.add_argument("link", help="patchnet://... link")
    p_sub.add_argument("path", nargs="?", help="Directory to receive the project")

    sub.add_parser("projects", help="List registered projects")

    p_del = sub.add_parser("delete", help="Delete a project and its patches")
    p_del.add_argument("bundle_id")

    p_patches = sub.add_parser("patches", help="List received patches")
    p_patches.add_argument("bundle_id")

    p_show = sub.add_parser("show", help="Show a received patch")
    p_show.add_argument("bundle_id")
    p_show.add_argument("patch", help="Patch id or unique prefix")
    p_show.add_argument("--raw", action="store_true", help="Print the patch text")

    p_hunks = sub.add_parser("hunks", help="Show a patch's hunks for one file")
    p_hunks.add_argument("bundle_id")
    p_hunks.add_argument("patch", help="Patch id or unique prefix")
    p_hunks.add_argument("file", help="Path as it appears in the diff")

    p_trust = sub.add_parser("trust", help="Trust the key a patch was sent with")
    p_trust.add_argument("bundle_id")
    p_trust.add_argument("patch", help="Patch id or unique prefix")
    p_trust.add_argument(
        "--toggle", action="store_true",
        help="Untrust the author instead if they are already trusted",
    )

    p_untrust = sub.add_parser("untrust", help="Forget an author's trusted key")
    p_untrust.add_argument("author", help="Author identity, as in the patch From: header")

    sub.add_parser("keys", help="List trusted authors")

    p_discard = sub.add_parser("discard", help="Remove a received patch")
    p_discard.add_argument("bundle_id")
    p_discard.add_argument("patch", help="Patch id or unique prefix")

    p_apply = sub.add_parser("apply", help="Apply a received patch (git am)")
    p_apply.add_argument("bundle_id")
    p_apply.add_argument("patch", help="Patch id or unique prefix")
    p_apply.add_argument("--force", action="store_true", help="Apply even if not trusted")

    p_pub = sub.add_parser("publish", help="Commit and broadcast local changes")
    p_pub.add_argument("bundle_id")
    p_pub.add_argument("--relay", action="append", help="Relay URL (repeatable)")

    p_status = sub.add_parser("status", help="Show git status of a project")
    p_status.add_argument("bundle_id")

    p_user = sub.add_parser("user", help="Show or set the git author identity")
    p_user.add_argument("--name")
    p_user.add_argument("--email")

    p_node = sub.add_parser("node", help="Node management")
    node_sub = p_node.add_subparsers(dest="node_command")
    p_ns = node_sub.add_parser("start", help="Start the patchnet node (foreground)")
    p_ns.add_argument("--relay", action="append", help="Relay URL (repeatable)")
    node_sub.add_parser("status", help="Show node identity and config")

    args = parser.parse_args()

    if not args.command:
        print("patchnet — peer-to-peer patches for local git projects")
        print()
        print("Usage:")
        print("  patchnet init [path] [--bundle-id ID]")
        print("  patchnet subscribe patchnet://... [path]")
        print("  patchnet projects")
        print("  patchnet publish <bundle-id>")
        print("  patchnet patches <bundle-id>")
        print("  patchnet show <bundle-id> <patch>")
        print("  patchnet trust <bundle-id> <patch>")
        print("  patchnet apply <bundle-id> <patch>")
        print("  patchnet node start [--relay wss://...]")
        print()
        print("Run 'patchnet <command> --help' for details on any command.")
        sys.exit(0)

    if args.command != "node":
        logging.basicConfig(
            level=logging.DEBUG if args.verbose else logging.WARNING,
            format="%(levelname)s %(name)s: %(message)s",
        )

    if args.command == "node":
        node_commands = {
            "start": cmd_node_start,
            "status": cmd_node_status,
        }
        nc = getattr(args, "node_command", None)
        if not nc:
            print("Usage: patchnet node {start|status}")
            sys.exit(0)
        handler = node_commands[nc]
    else:
        commands = {
            "init": cmd_init,
            "link": cmd_link,
            "subscribe": cmd_subscribe,
            "projects": cmd_projects,
            "delete": cmd_delete,
            "patches": cmd_patches,
            "show": cmd_show,
            "hunks": cmd_hunks,
            "trust": cmd_trust,
            "untrust": cmd_untrust,
            "keys": cmd_keys,
            "discard": cmd_discard,
            "apply": cmd_apply,
            "publish": cmd_publish,
            "status": cmd_status,
            "user": cmd_user,
        }
        handler = commands[args.command]

    try:
        handler(args)
    except (
        StorageError,
        ProjectError,
        LinkInvalid,
        MalformedPatch,
        GitError,
        ProtocolError,
        BroadcastFailed,
        ImportError,
        ValueError,
    ) as e:
        if isinstance(e, GitError) and e.output:
            print(e.output, file=sys.stderr)
        _fail(str(e))


if __name__ == "__main__":
    main()
