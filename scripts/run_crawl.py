"""
Run one crawl from CLI, in-process or through the durable queue.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import threading
from pathlib import Path

from app.config import get_crawl_scheduler_settings, get_crawl_session_settings
from app.crawler.errors import CrawlJobError
from app.crawler.runner import build_session_runner
from app.scheduler.job_scheduler import JobScheduler
from app.validators.crawler_config_validator import validate_crawler_config
from db.session import get_session_factory


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a configuration-driven catalog crawl.")
    parser.add_argument(
        "--config",
        dest="config_path",
        required=True,
        help="Path to a JSON crawler configuration.",
    )
    parser.add_argument(
        "--enqueue",
        action="store_true",
        help="Submit to the job queue instead of crawling in-process.",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").strip().upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    payload = json.loads(Path(args.config_path).read_text(encoding="utf-8"))
    scheduler_settings = get_crawl_scheduler_settings()
    runner = build_session_runner(
        scheduler_settings=scheduler_settings,
        session_settings=get_crawl_session_settings(),
    )

    try:
        if args.enqueue:
            scheduler = JobScheduler(
                session_factory=get_session_factory(),
                runner=runner,
                settings=scheduler_settings,
            )
            job_id = scheduler.submit(payload)
            print(json.dumps({"job_id": str(job_id), "queuePosition": scheduler.job_counts()}, indent=2))
            return 0

        config = validate_crawler_config(payload)
        result = runner.run(job_id="cli", config=config, cancel_event=threading.Event())
    except CrawlJobError as exc:
        print(json.dumps({"error": exc.code, **exc.to_payload()}, indent=2))
        return 1
    finally:
        runner.close()

    print(json.dumps(result.to_payload(), indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
