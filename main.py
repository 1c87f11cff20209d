#!/usr/bin/env python3
"""
EPUB Digest Orchestrator

Command-line entry point for building e-reader books:
1. digest: fetch the configured feeds, keep the fresh entries and build an RSS digest
2. read-it-later: build a book from saved links
3. status: show the effective configuration

Exit code is 0 when a book was written (or status was printed), 1 otherwise.
"""

import asyncio
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional
import argparse

from config import config, get_logger
from errors import DigestError, EmptyDigestError
from models import ReadItLaterItem
from pipeline import generate_and_save, generate_read_it_later_and_save
from telemetry import init_telemetry, trace_span

# Module-specific logger
logger = get_logger("orchestrator")
init_telemetry("feed-epub-orchestrator")


class DigestOrchestrator:
    """Runs one book build per invocation."""

    def __init__(self, output_dir: Optional[str] = None, since_hours: Optional[int] = None) -> None:
        self.output_dir = output_dir or config.OUTPUT_DIR
        self.options = config.run_options()
        if since_hours:
            self.options.fetch_since_hours = since_hours

    async def run_digest(self) -> bool:
        """Build the regular RSS digest."""
        logger.info("📡 Building RSS digest")
        if not config.FEEDS:
            logger.error(f"❌ No feeds configured in {config.FEEDS_CONFIG_PATH}")
            return False
        try:
            return await self._run_digest_impl()
        except EmptyDigestError as e:
            logger.warning(f"📭 {e}")
            return False
        except DigestError as e:
            logger.error(f"❌ Digest failed ({e.kind}): {e}")
            return False

    @trace_span("run_digest", tracer_name="orchestrator", attr_from_args=lambda self: {"feeds.count": len(config.FEEDS)})
    async def _run_digest_impl(self) -> bool:
        start_time = time.time()
        result = await generate_and_save(
            config.FEEDS,
            output_dir=self.output_dir,
            options=self.options,
            overrides=config.DOMAIN_OVERRIDES,
        )
        logger.info(f"🎉 Digest completed in {time.time() - start_time:.1f}s")
        print(Path(result).name)
        return True

    async def run_read_it_later(self, urls: Optional[List[str]] = None) -> bool:
        """Build a book from ``--url`` arguments or the read_it_later list in feeds.yaml."""
        items = [ReadItLaterItem(url=u) for u in urls] if urls else list(config.READ_IT_LATER)
        logger.info(f"🔖 Building read-it-later book from {len(items)} links")
        try:
            result = await generate_read_it_later_and_save(
                items,
                output_dir=self.output_dir,
                options=self.options,
                overrides=config.DOMAIN_OVERRIDES,
            )
        except EmptyDigestError as e:
            logger.warning(f"📭 {e}")
            return False
        except DigestError as e:
            logger.error(f"❌ Read-it-later book failed ({e.kind}): {e}")
            return False
        logger.info("✅ Read-it-later book completed")
        print(Path(result).name)
        return True

    def check_status(self) -> dict:
        """Collect configuration and output directory information."""
        logger.info("📊 Checking system status")
        output_dir = Path(self.output_dir)
        books = sorted(output_dir.glob("*.epub")) if output_dir.exists() else []
        return {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'config': config.get_config_summary(),
            'output': {
                'output_dir_exists': output_dir.exists(),
                'books': len(books),
                'latest': books[-1].name if books else None,
                'partial_files': len(list(output_dir.glob("*.part"))) if output_dir.exists() else 0,
            },
        }

    def print_status(self, status: dict):
        """Print formatted status information."""
        summary = status['config']
        output = status['output']
        print(f"\n📊 EPUB Digest Status")
        print(f"⏰ {status['timestamp']}")
        print(f"\n⚙️ Configuration:")
        print(f"   📄 Feeds file: {summary['feeds_config_path']}")
        print(f"   📰 Feeds: {summary['feed_count']}")
        print(f"   🧭 Domain overrides: {summary['domain_override_count']}")
        print(f"   🔖 Read-it-later links: {summary['read_it_later_count']}")
        print(f"   🕐 Window: last {self.options.fetch_since_hours} hours")
        print(f"   🖼️ Cover: {summary['cover_path']} ({'present' if summary['cover_present'] else 'missing'})")
        print(f"\n📁 Output: {self.output_dir}")
        print(f"   📚 Books: {output['books']}")
        if output['latest']:
            print(f"   🆕 Latest: {output['latest']}")
        if output['partial_files']:
            print(f"   ⚠️ Leftover partial files: {output['partial_files']}")


def main():
    """Main entry point."""

    parser = argparse.ArgumentParser(description='EPUB Digest Builder')
    parser.add_argument('mode', choices=['digest', 'read-it-later', 'status'],
                        help='Operation mode')
    parser.add_argument('--since-hours', type=int,
                        help='Only include entries published in the last N hours')
    parser.add_argument('--output-dir', type=str,
                        help='Directory receiving the finished book')
    parser.add_argument('--url', action='append', dest='urls',
                        help='Saved link for read-it-later mode (repeatable)')

    args = parser.parse_args()
    if args.since_hours is not None and args.since_hours < 1:
        parser.error("--since-hours must be at least 1")

    orchestrator = DigestOrchestrator(args.output_dir, args.since_hours)

    try:
        if args.mode == 'digest':
            success = asyncio.run(orchestrator.run_digest())
            sys.exit(0 if success else 1)

        elif args.mode == 'read-it-later':
            success = asyncio.run(orchestrator.run_read_it_later(args.urls))
            sys.exit(0 if success else 1)

        elif args.mode == 'status':
            status = orchestrator.check_status()
            orchestrator.print_status(status)

    except KeyboardInterrupt:
        logger.info("👋 Orchestrator shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
