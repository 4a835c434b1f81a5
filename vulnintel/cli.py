"""
Command line entry point.

  vulnintel generate CVE-2024-3094
  vulnintel generate --latest --days 3
  vulnintel update-index --days 30 --min-cvss 7.0 [--force]
  vulnintel clean-cache [--all]
  vulnintel stats [--json]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections import Counter
from typing import Any, Dict, List, Optional

import structlog

from vulnintel import __version__
from vulnintel.core.config import Settings, get_settings
from vulnintel.core.errors import ConfigError, ExhaustedFallbackError, FetchError
from vulnintel.logging_config import configure_logging
from vulnintel.services.cache import create_response_cache
from vulnintel.services.fetchers.nvd import NvdFetcher
from vulnintel.services.fetchers.parsing import is_cve_id, normalize_cve_id
from vulnintel.services.http_client import create_http_client
from vulnintel.services.index_updater import IndexUpdater
from vulnintel.services.metrics import metrics
from vulnintel.services.pipeline import VulnerabilityPipeline
from vulnintel.services.similarity_index import SimilarityIndex
from vulnintel.utils.error_handling import classify_and_log_error

logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def _cve_arg(value: str) -> str:
    if not is_cve_id(value):
        raise argparse.ArgumentTypeError(f"not a CVE id: {value!r} (expected CVE-YYYY-NNNN)")
    return normalize_cve_id(value)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="vulnintel", description="Vulnerability intelligence write-ups")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = ap.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate", help="Aggregate, retrieve and generate a post for one CVE")
    gen.add_argument("cve_id", nargs="?", type=_cve_arg, help="CVE id, e.g. CVE-2024-3094")
    gen.add_argument("--latest", action="store_true", help="Use the highest-scored recent critical CVE")
    gen.add_argument("--days", type=int, default=7, help="Look-back window for --latest")
    gen.add_argument("--backend", help="Preferred generation backend")
    gen.add_argument("--prompt", help="Extra instructions for the synthesis phase")
    gen.add_argument("--output-dir", help="Directory for generated posts")
    gen.add_argument("--no-cache", action="store_true", help="Bypass the HTTP response cache")

    upd = sub.add_parser("update-index", help="Refresh the similarity index from NVD")
    upd.add_argument("--days", type=int, default=None)
    upd.add_argument("--min-cvss", type=float, default=None)
    upd.add_argument("--limit", type=int, default=100)
    upd.add_argument("--force", action="store_true", help="Rebuild instead of updating")

    clean = sub.add_parser("clean-cache", help="Remove expired cache entries")
    clean.add_argument("--all", action="store_true", help="Remove every entry, expired or not")

    stats = sub.add_parser("stats", help="Show index, cache and metrics statistics")
    stats.add_argument("--json", action="store_true", help="Emit JSON")

    return ap


# ────────────────────────────────────────────────────────────
#  Commands
# ────────────────────────────────────────────────────────────


async def cmd_generate(args: argparse.Namespace, settings: Settings) -> int:
    if not args.cve_id and not args.latest:
        print("error: give a CVE id or --latest", file=sys.stderr)
        return EXIT_USAGE
    overrides: Dict[str, Any] = {}
    if args.output_dir:
        overrides["output_dir"] = args.output_dir
    if args.no_cache:
        overrides["cache_enabled"] = False
    if overrides:
        settings = settings.with_overrides(**overrides)
    if args.backend and args.backend not in settings.backends:
        print(f"error: unknown backend {args.backend!r}", file=sys.stderr)
        return EXIT_USAGE

    async with VulnerabilityPipeline.from_settings(settings, metrics=metrics) as pipeline:
        cve_id = args.cve_id
        if args.latest:
            cve_id = await pipeline.find_latest_critical(days_back=args.days)
            if not cve_id:
                print("No recent critical CVEs found", file=sys.stderr)
                return EXIT_FAILED
        try:
            result = await pipeline.run(cve_id, prompt=args.prompt, backend=args.backend)
        except ExhaustedFallbackError as e:
            print(f"error: {e}", file=sys.stderr)
            for attempt in e.attempts:
                print(f"  - {attempt.get('backend')}: {attempt.get('error')}", file=sys.stderr)
            return EXIT_FAILED

    print(json.dumps(result.summary(), indent=2))
    return EXIT_OK


async def cmd_update_index(args: argparse.Namespace, settings: Settings) -> int:
    http = create_http_client(settings, metrics=metrics)
    try:
        index = SimilarityIndex(settings.index_path)
        index.load()
        updater = IndexUpdater(index, NvdFetcher(http, settings), settings=settings, metrics=metrics)
        try:
            summary = await updater.update(
                days_back=args.days, min_cvss=args.min_cvss, force=args.force, limit=args.limit
            )
        except FetchError as e:
            info = classify_and_log_error(e, "index_updater", metrics=metrics)
            print(f"error: {info['message']}\nhint: {info['suggestion']}", file=sys.stderr)
            return EXIT_FAILED
    finally:
        await http.close()
    print(json.dumps(summary.to_dict(), indent=2))
    return EXIT_OK


async def cmd_clean_cache(args: argparse.Namespace, settings: Settings) -> int:
    cache = create_response_cache(settings, metrics=metrics)
    if cache is None:
        print("Cache is disabled")
        return EXIT_OK
    try:
        removed = await cache.clear() if args.all else await cache.clean_expired()
    finally:
        await cache.close()
    print(f"Removed {removed} cache entr{'y' if removed == 1 else 'ies'}")
    return EXIT_OK


def collect_stats(settings: Settings) -> Dict[str, Any]:
    index = SimilarityIndex(settings.index_path)
    index.load()
    severities = Counter(e.severity_label or "UNKNOWN" for e in index.entries())
    cwes: Counter = Counter()
    for entry in index.entries():
        cwes.update(entry.taxonomy_ids)

    if settings.metrics_dir:
        metrics.load_jsonl(settings.metrics_dir)

    return {
        "index": {
            "path": settings.index_path,
            "count": len(index),
            "metadata": index.metadata,
            "severity": dict(severities),
            "top_cwes": cwes.most_common(10),
        },
        "metrics": metrics.snapshot(),
    }


async def cmd_stats(args: argparse.Namespace, settings: Settings) -> int:
    stats = collect_stats(settings)
    if args.json:
        print(json.dumps(stats, indent=2, default=str))
        return EXIT_OK

    idx = stats["index"]
    m = stats["metrics"]
    lines: List[str] = [
        f"Index: {idx['count']} entries ({idx['path']})",
        "  by severity: " + (", ".join(f"{k}={v}" for k, v in sorted(idx["severity"].items())) or "none"),
        f"Cache hit rate: {m['cache_hit_rate']:.1%}",
        f"Retry rate: {m['retry_rate']:.2f} retries/request",
        f"LLM cost (estimated): ${m['total_cost']:.4f}",
    ]
    for phase, rate in sorted(m["fallback_rates"].items()):
        lines.append(f"Fallback rate [{phase}]: {rate:.1%}")
    for kind, pct in sorted(m["latency"].items()):
        lines.append(f"Latency [{kind}]: p50={pct['p50']}ms p95={pct['p95']}ms p99={pct['p99']}ms")
    print("\n".join(lines))
    return EXIT_OK


COMMANDS = {
    "generate": cmd_generate,
    "update-index": cmd_update_index,
    "clean-cache": cmd_clean_cache,
    "stats": cmd_stats,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(force=True, level="DEBUG" if args.verbose else None)
    try:
        settings = get_settings()
    except ConfigError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        return EXIT_USAGE
    if settings.metrics_dir and args.command != "stats":
        metrics.configure_sink(settings.metrics_dir)
    logger.debug("Running command", command=args.command, version=__version__)
    return asyncio.run(COMMANDS[args.command](args, settings))


if __name__ == "__main__":
    sys.exit(main())
