from __future__ import annotations

import argparse
import sys
from typing import Optional

from sqlalchemy import text

from .config import MAX_CUSTOM_TARGETS, get_database_config
from .custom_targets import CustomTargetStore
from .db import get_session
from .embedding_provider import EmbeddingProvider, HttpEmbeddingProvider
from .errors import LinkerError
from .indexing.coordinator import AdvanceResult, BatchCoordinator
from .links import LinkStore
from .logging_config import configure_logging
from .matching.matcher import Matcher, MatchSummary


def _make_provider() -> EmbeddingProvider:
    return HttpEmbeddingProvider()


def _close_provider(provider: EmbeddingProvider) -> None:
    close = getattr(provider, "close", None)
    if callable(close):
        close()


def _fail(exc: Exception) -> None:
    print(f"ERROR: {exc}", file=sys.stderr)
    sys.exit(1)


def _print_match_summary(summary: Optional[MatchSummary]) -> None:
    if summary is None:
        return
    print(f"Match run {summary.match_run_id}: {summary.status}")
    print(f"  Sources:       {summary.sources_processed}/{summary.sources_total}")
    print(f"  Proposed:      {summary.proposed}")
    print(f"  Duplicates:    {summary.duplicates}")
    print(f"  Blacklisted:   {summary.blacklisted}")
    print(f"  Capped:        {summary.capped}")
    print(f"  Filtered:      {summary.filtered}")


def _print_advance(result: AdvanceResult) -> None:
    print(
        f"Run {result.run_id}: {result.state} {result.processed}/{result.total}"
        + (f" next={result.next_token}" if result.next_token else "")
    )
    for item_id, message in sorted(result.failed_items.items()):
        print(f"  item {item_id} failed: {message}")
    _print_match_summary(result.match_summary)


# === Command implementations ===


def cmd_check_db(args: argparse.Namespace) -> None:
    """
    Simple connectivity check for the configured database.
    """
    db_cfg = get_database_config()
    print("Semantic Linker Backend – Database Check")
    print("----------------------------------------")
    print(f"Database URL: {db_cfg.database_url}")

    try:
        with get_session() as session:
            session.execute(text("SELECT 1"))
    except Exception as exc:  # any failure means "not OK"
        print(f"ERROR: Failed to connect to database: {exc}")
        sys.exit(1)
    else:
        print("Database connection OK.")


def cmd_index_start(args: argparse.Namespace) -> None:
    with get_session() as session:
        result = BatchCoordinator(session).init()
        if result.already_running:
            print(f"Indexing run {result.run_id} is already running.")
        else:
            print(f"Started indexing run {result.run_id}.")
        print(f"Items to embed: {result.total}")
        print(f"Token:          {result.token}")


def cmd_index_advance(args: argparse.Namespace) -> None:
    provider = _make_provider()
    try:
        with get_session() as session:
            result = BatchCoordinator(session, provider).advance(args.token)
            _print_advance(result)
    except LinkerError as exc:
        _fail(exc)
    finally:
        _close_provider(provider)


def cmd_index_run(args: argparse.Namespace) -> None:
    """
    Drive a full indexing run to completion in this process.

    Starts a run (or resumes the running one) and advances slice by slice
    until it is done, then prints the matching summary.
    """
    provider = _make_provider()
    try:
        with get_session() as session:
            coordinator = BatchCoordinator(session, provider)
            init = coordinator.init()
            print(
                f"{'Resuming' if init.already_running else 'Started'} indexing run "
                f"{init.run_id} ({init.total} item(s))."
            )
            token: Optional[str] = init.token
            slices = 0
            while token is not None:
                if args.max_slices and slices >= args.max_slices:
                    print(f"Stopped after {slices} slice(s); resume with token {token}.")
                    break
                result = coordinator.advance(token)
                slices += 1
                _print_advance(result)
                token = None if result.done else result.next_token
    except LinkerError as exc:
        _fail(exc)
    finally:
        _close_provider(provider)


def cmd_index_cancel(args: argparse.Namespace) -> None:
    with get_session() as session:
        cancelled = BatchCoordinator(session).cancel(also_cancel_downstream=args.downstream)
    print("Cancelled." if cancelled else "Nothing to cancel.")


def cmd_index_status(args: argparse.Namespace) -> None:
    with get_session() as session:
        progress = BatchCoordinator(session).status()
        if progress is None:
            print("No indexing run yet (idle).")
            return
        print(f"Run:        {progress.run_id}")
        print(f"State:      {progress.state}")
        print(f"Progress:   {progress.processed}/{progress.total}")
        print(f"Embedded:   {progress.embedded}")
        print(f"Skipped:    {progress.skipped}")
        print(f"Failed:     {len(progress.failed_items)}")
        if progress.failed_item_id is not None:
            print(f"Failed at:  item {progress.failed_item_id}")
        if progress.error_message:
            print(f"Error:      {progress.error_message}")
        if progress.next_token:
            print(f"Next token: {progress.next_token}")
        if progress.match_run_id is not None:
            print(f"Match run:  {progress.match_run_id} ({progress.match_state})")


def cmd_match(args: argparse.Namespace) -> None:
    try:
        with get_session() as session:
            summary = Matcher(session).run(source_ids=args.source_id or None)
            _print_match_summary(summary)
    except LinkerError as exc:
        _fail(exc)


def cmd_list_links(args: argparse.Namespace) -> None:
    try:
        with get_session() as session:
            links = LinkStore(session).list_links(args.status)
            print(f"{len(links)} link(s)")
            for link in links[: args.limit]:
                print(
                    f"{link.id:>6}  {link.status:<9} {link.score:.3f}  "
                    f"[{link.source_id}] \"{link.anchor_text}\" -> {link.target_url}"
                )
    except LinkerError as exc:
        _fail(exc)


def cmd_reject_link(args: argparse.Namespace) -> None:
    try:
        with get_session() as session:
            changed = LinkStore(session).reject(args.link_id)
    except LinkerError as exc:
        _fail(exc)
    else:
        print(f"Link {args.link_id} rejected." if changed else f"Link {args.link_id} already rejected.")


def cmd_restore_link(args: argparse.Namespace) -> None:
    try:
        with get_session() as session:
            changed = LinkStore(session).restore(args.link_id)
    except LinkerError as exc:
        _fail(exc)
    else:
        print(f"Link {args.link_id} restored." if changed else f"Link {args.link_id} already active.")


def cmd_delete_all(args: argparse.Namespace) -> None:
    if not args.yes:
        print(
            "ERROR: Refusing to delete all links, blacklist entries and embeddings "
            "without --yes.",
            file=sys.stderr,
        )
        sys.exit(1)
    with get_session() as session:
        result = BatchCoordinator(session).reset_all()
    print(f"Links deleted:            {result.links}")
    print(f"Blacklist entries deleted: {result.blacklist}")
    print(f"Embeddings deleted:       {result.embeddings}")


def cmd_custom_add(args: argparse.Namespace) -> None:
    try:
        with get_session() as session:
            target_id = CustomTargetStore(session).add(args.url, args.title, args.keywords or "")
    except LinkerError as exc:
        _fail(exc)
    else:
        print(f"Added custom target {target_id}. Run 'custom-targets embed' to embed it.")


def cmd_custom_list(args: argparse.Namespace) -> None:
    with get_session() as session:
        store = CustomTargetStore(session)
        targets = store.list()
        print(f"{len(targets)}/{MAX_CUSTOM_TARGETS} custom target(s)")
        for target in targets:
            embedded = "yes" if target.embedding is not None else "no"
            print(
                f"{target.id:>4}  {target.status:<8} embedded={embedded:<3}  "
                f"{target.title} -> {target.url}"
            )


def cmd_custom_update(args: argparse.Namespace) -> None:
    try:
        with get_session() as session:
            CustomTargetStore(session).update(
                args.target_id,
                url=args.url,
                title=args.title,
                keywords=args.keywords,
                status=args.status,
            )
    except LinkerError as exc:
        _fail(exc)
    else:
        print(f"Updated custom target {args.target_id}.")


def cmd_custom_delete(args: argparse.Namespace) -> None:
    try:
        with get_session() as session:
            CustomTargetStore(session).delete(args.target_id)
    except LinkerError as exc:
        _fail(exc)
    else:
        print(f"Deleted custom target {args.target_id}.")


def cmd_custom_embed(args: argparse.Namespace) -> None:
    provider = _make_provider()
    try:
        with get_session() as session:
            store = CustomTargetStore(session)
            if args.target_id is not None:
                store.generate_embedding(args.target_id, provider)
                print(f"Embedded custom target {args.target_id}.")
            else:
                embedded, failed = store.embed_pending(provider)
                print(f"Embedded {embedded} custom target(s); {failed} failed.")
    except LinkerError as exc:
        _fail(exc)
    finally:
        _close_provider(provider)


def cmd_custom_threshold(args: argparse.Namespace) -> None:
    try:
        with get_session() as session:
            store = CustomTargetStore(session)
            if args.set is not None:
                value = store.save_threshold(args.set)
                print(f"Custom target threshold saved: {value:.2f}")
            else:
                print(f"Custom target threshold: {store.get_threshold():.2f}")
    except LinkerError as exc:
        _fail(exc)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sl-backend",
        description="Semantic linker backend CLI utilities.",
    )
    subparsers = parser.add_subparsers(
        dest="command",
        metavar="COMMAND",
        required=True,
    )

    p_db = subparsers.add_parser(
        "check-db",
        help="Check database connectivity using the configured DATABASE_URL.",
    )
    p_db.set_defaults(func=cmd_check_db)

    p_start = subparsers.add_parser(
        "index-start",
        help="Start a batch indexing run over items lacking a current embedding.",
    )
    p_start.set_defaults(func=cmd_index_start)

    p_adv = subparsers.add_parser(
        "index-advance",
        help="Process one slice of the running indexing run.",
    )
    p_adv.add_argument("--token", required=True, help="Slice token returned by the previous step.")
    p_adv.set_defaults(func=cmd_index_advance)

    p_run = subparsers.add_parser(
        "index-run",
        help="Start (or resume) an indexing run and advance it to completion.",
    )
    p_run.add_argument(
        "--max-slices",
        type=int,
        default=0,
        help="Stop after this many slices (0 = run to completion).",
    )
    p_run.set_defaults(func=cmd_index_run)

    p_cancel = subparsers.add_parser(
        "index-cancel",
        help="Cancel the running indexing run.",
    )
    p_cancel.add_argument(
        "--downstream",
        action="store_true",
        help="Also cancel a matching pass that is in flight.",
    )
    p_cancel.set_defaults(func=cmd_index_cancel)

    p_status = subparsers.add_parser(
        "index-status",
        help="Show progress of the most recent indexing run.",
    )
    p_status.set_defaults(func=cmd_index_status)

    p_match = subparsers.add_parser(
        "match",
        help="Run a matching pass over the current embeddings.",
    )
    p_match.add_argument(
        "--source-id",
        type=int,
        action="append",
        help="Restrict the pass to this source item (repeatable).",
    )
    p_match.set_defaults(func=cmd_match)

    p_list = subparsers.add_parser("list-links", help="List links.")
    p_list.add_argument(
        "--status",
        choices=["active", "rejected", "filtered"],
        default=None,
        help="Only show links with this status.",
    )
    p_list.add_argument("--limit", type=int, default=100)
    p_list.set_defaults(func=cmd_list_links)

    p_reject = subparsers.add_parser(
        "reject-link",
        help="Reject a link and blacklist its (source, target URL) pair.",
    )
    p_reject.add_argument("link_id", type=int)
    p_reject.set_defaults(func=cmd_reject_link)

    p_restore = subparsers.add_parser(
        "restore-link",
        help="Restore a rejected or filtered link.",
    )
    p_restore.add_argument("link_id", type=int)
    p_restore.set_defaults(func=cmd_restore_link)

    p_delete = subparsers.add_parser(
        "delete-all",
        help="Delete all links, blacklist entries and embeddings.",
    )
    p_delete.add_argument("--yes", action="store_true", help="Confirm the deletion.")
    p_delete.set_defaults(func=cmd_delete_all)

    p_custom = subparsers.add_parser("custom-targets", help="Manage custom link targets.")
    custom_sub = p_custom.add_subparsers(dest="custom_command", metavar="ACTION", required=True)

    c_add = custom_sub.add_parser("add", help="Add a custom target.")
    c_add.add_argument("--url", required=True)
    c_add.add_argument("--title", required=True)
    c_add.add_argument("--keywords", default="")
    c_add.set_defaults(func=cmd_custom_add)

    c_list = custom_sub.add_parser("list", help="List custom targets.")
    c_list.set_defaults(func=cmd_custom_list)

    c_update = custom_sub.add_parser("update", help="Update a custom target.")
    c_update.add_argument("target_id", type=int)
    c_update.add_argument("--url")
    c_update.add_argument("--title")
    c_update.add_argument("--keywords")
    c_update.add_argument("--status", choices=["active", "inactive"])
    c_update.set_defaults(func=cmd_custom_update)

    c_delete = custom_sub.add_parser("delete", help="Delete a custom target.")
    c_delete.add_argument("target_id", type=int)
    c_delete.set_defaults(func=cmd_custom_delete)

    c_embed = custom_sub.add_parser(
        "embed",
        help="Generate embeddings for custom targets (all pending, or one by id).",
    )
    c_embed.add_argument("--id", dest="target_id", type=int, default=None)
    c_embed.set_defaults(func=cmd_custom_embed)

    c_threshold = custom_sub.add_parser(
        "threshold",
        help="Show or save the custom-target similarity threshold.",
    )
    c_threshold.add_argument("--set", type=float, default=None, help="New value (clamped to 0.20-0.90).")
    c_threshold.set_defaults(func=cmd_custom_threshold)

    return parser


def main(argv: list[str] | None = None) -> None:
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)
    args.func(args)


if __name__ == "__main__":  # pragma: no cover
    main()
