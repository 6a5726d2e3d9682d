#!/usr/bin/env python3
"""
Main executable for the evaluation job worker
Usage:
    python run.py                    # Consume jobs using the configured backends
    python run.py --in-memory        # Force in-process repository and queue
    python run.py --in-memory --demo # Also submit one bulk evaluation job on startup
"""
import argparse
import logging
import sys

from copilot_eval.pipeline.worker import JobWorker

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Evaluation job worker")
    parser.add_argument("--in-memory", action="store_true",
                        help="use the in-process job repository and queue")
    parser.add_argument("--demo", action="store_true",
                        help="submit a bulk evaluation job when the worker starts")
    parser.add_argument("--data-source", default=None,
                        help="CSV locator (container/key) for the demo job")
    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)
    worker = JobWorker(in_memory=args.in_memory)
    try:
        worker.start(demo=args.demo, data_source=args.data_source)
    except Exception as e:
        logger.error(f"Worker failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
