from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

from .api.models import ExportDocument, SubmissionFilter
from .errors import KeyFetchError
from .keys.cache import KeyCache
from .settings import settings
from .store.persistence import JsonDirPersistence


async def _fetch_keys() -> dict:
    cache = KeyCache(settings)
    try:
        await cache.refresh()
        return cache.status()
    finally:
        await cache.close()


def cmd_keys(args: argparse.Namespace) -> int:
    try:
        status = asyncio.run(_fetch_keys())
    except KeyFetchError as e:
        print(f"Key fetch failed: {e}", file=sys.stderr)
        return 1
    for kid in status["key_ids"]:
        print(kid)
    print(f"{status['keys_loaded']} signer keys from {settings.key_source_url}")
    return 0


def _parse_when(text: str | None) -> datetime | None:
    if not text:
        return None
    when = datetime.fromisoformat(text)
    return when if when.tzinfo is not None else when.replace(tzinfo=timezone.utc)


def cmd_export(args: argparse.Namespace) -> int:
    root = settings.submissions_dir()
    try:
        flt = SubmissionFilter(
            form_id=args.form_id,
            start=_parse_when(args.start),
            end=_parse_when(args.end),
            validated_only=args.validated_only,
        )
    except ValueError as e:
        print(f"Bad filter: {e}", file=sys.stderr)
        return 2
    items = [s for s in JsonDirPersistence(root).load_all() if flt.matches(s)]
    items.sort(key=lambda s: s.received_at, reverse=True)
    doc = ExportDocument(total_submissions=len(items), filters=flt, submissions=items)
    out = Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(doc.model_dump_json(indent=2))
    print(f"Wrote {out} ({len(items)} submissions)")
    return 0


def cmd_cleanup(args: argparse.Namespace) -> int:
    if args.days < 0:
        print("--days must be >= 0", file=sys.stderr)
        return 2
    backend = JsonDirPersistence(settings.submissions_dir())
    cutoff = datetime.now(timezone.utc) - timedelta(days=args.days)
    stale = [s.id for s in backend.load_all() if s.id and s.received_at < cutoff]
    backend.remove(stale)
    print(f"Removed {len(stale)} submissions older than {args.days} days")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="amphook-cli",
        description="AMP form webhook utilities",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    p_keys = sub.add_parser("keys", help="Fetch the signer key document and list usable key ids")
    p_keys.set_defaults(func=cmd_keys)

    p_export = sub.add_parser("export", help="Export persisted submissions as JSON")
    p_export.add_argument("--out", required=True, help="Output path (e.g. export.json)")
    p_export.add_argument("--form-id", dest="form_id")
    p_export.add_argument("--start", help="ISO-8601 lower bound on received time")
    p_export.add_argument("--end", help="ISO-8601 upper bound on received time")
    p_export.add_argument("--validated-only", action="store_true")
    p_export.set_defaults(func=cmd_export)

    p_cleanup = sub.add_parser("cleanup", help="Delete persisted submissions past retention")
    p_cleanup.add_argument("--days", type=float, default=settings.retention_days)
    p_cleanup.set_defaults(func=cmd_cleanup)
    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
