"""Command-line entry point: review one change-set and exit with its verdict code."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional

from patternreview.collaborators import DiffFetcher, GitFetcher, JsonFilePublisher
from patternreview.config import REVIEW_OUTPUT_DIR, ReviewConfig
from patternreview.errors import ConfigError, ReviewError
from patternreview.judge import BedrockJudge
from patternreview.orchestrator import EXIT_CONFIG, EXIT_FATAL, review


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )
    for noisy in ("botocore", "boto3", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pattern-review",
        description="Detect known anti-patterns in a change-set and publish review comments.",
        epilog=(
            "Exit codes: 0 no blocking findings, 1 blocking findings, "
            "2 fatal pipeline error, 3 invalid configuration"
        ),
    )
    parser.add_argument("change_set", help="Git ref to review, or an id when --diff is given")
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--repo", default=None, help="Git repository to read from (default: .)")
    source.add_argument("--diff", metavar="FILE", help="Review a unified diff file instead of git")
    parser.add_argument("--base", default="main", help="Base ref for git reviews (default: main)")
    parser.add_argument("--config", metavar="PATH", help="YAML review configuration")
    parser.add_argument("--patterns", metavar="DIR", action="append", help="Pattern source (repeatable)")
    parser.add_argument("--output-dir", default=REVIEW_OUTPUT_DIR, help="Where published reviews are written")
    parser.add_argument("--dry-run", action="store_true", help="Render comments without publishing")
    parser.add_argument("--block-on-high", action="store_true", help="High-severity findings block too")
    parser.add_argument("--semantic", action="store_true", help="Run semantic rules via Bedrock")
    parser.add_argument("--json", action="store_true", help="Print the full JSON report")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    return parser


def _build_config(args: argparse.Namespace) -> ReviewConfig:
    config = ReviewConfig.from_yaml(args.config) if args.config else ReviewConfig()
    return config.with_overrides(
        dry_run=True if args.dry_run else None,
        block_on_high=True if args.block_on_high else None,
        pattern_sources=tuple(args.patterns) if args.patterns else None,
    )


def main(argv: Optional[list[str]] = None) -> int:
    args = create_parser().parse_args(argv)
    setup_logging(args.verbose)
    log = logging.getLogger(__name__)

    try:
        config = _build_config(args)
    except ConfigError as e:
        log.error("Invalid configuration: %s", e)
        return EXIT_CONFIG

    if args.diff:
        try:
            with open(args.diff, encoding="utf-8") as fh:
                diff_text = fh.read()
        except (OSError, UnicodeDecodeError) as e:
            log.error("Cannot read diff %s: %s", args.diff, e)
            return EXIT_FATAL
        fetcher = DiffFetcher({args.change_set: diff_text})
    else:
        fetcher = GitFetcher(args.repo or ".", base=args.base)

    exit_code, outcome = review(
        args.change_set,
        fetcher,
        publisher=None if config.dry_run else JsonFilePublisher(args.output_dir),
        judge=BedrockJudge() if args.semantic else None,
        config=config,
    )

    if isinstance(outcome, ReviewError):
        print(f"Review failed: {outcome}", file=sys.stderr)
    elif args.json:
        print(outcome.to_json())
    elif outcome.summary_payload is not None:
        print(outcome.summary_payload.body)
        for payload in outcome.payloads:
            print(payload.body)
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
