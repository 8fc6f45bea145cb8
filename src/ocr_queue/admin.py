"""
OCR queue operator CLI.

Exposes the job API as subcommands and prints JSON, e.g.::

    ocr-queue-admin create --mode missing --group 1203630@g.us
    ocr-queue-admin list --page 2
    ocr-queue-admin items <job-id> --status failed
    ocr-queue-admin retry <job-id>
"""

from __future__ import annotations

import argparse
import json
import sys

import structlog

from common.config import Settings
from common.logging_config import configure_logging
from .api import JobApi, OcrResultNotFoundError
from .db import create_engine_from_settings, init_schema, make_session_factory
from .models import DocumentStatus, JobMode
from .queue import JobNotFoundError, OcrQueue


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ocr-queue-admin", description="Manage OCR jobs."
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="create a job and enqueue its documents")
    create.add_argument("--mode", choices=JobMode.ALL_MODES, default=JobMode.MISSING)
    create.add_argument("--group", dest="group_id")
    create.add_argument("--requested-by")

    list_cmd = sub.add_parser("list", help="list jobs, newest first")
    list_cmd.add_argument("--page", type=int, default=1)
    list_cmd.add_argument("--limit", type=int, default=20)

    show = sub.add_parser("show", help="show one job")
    show.add_argument("job_id")

    items = sub.add_parser("items", help="list a job's documents")
    items.add_argument("job_id")
    items.add_argument(
        "--status",
        choices=(
            DocumentStatus.QUEUED,
            DocumentStatus.PROCESSING,
            DocumentStatus.SUCCEEDED,
            DocumentStatus.FAILED,
            DocumentStatus.SKIPPED,
        ),
    )
    items.add_argument("--page", type=int, default=1)
    items.add_argument("--limit", type=int, default=50)

    cancel = sub.add_parser("cancel", help="cancel a job")
    cancel.add_argument("job_id")

    retry = sub.add_parser("retry", help="re-queue a job's failed documents")
    retry.add_argument("job_id")

    result = sub.add_parser("result", help="show the OCR result of a media item")
    result.add_argument("media_id")

    sub.add_parser("init-db", help="create missing tables")
    return parser


def run_command(args: argparse.Namespace, api: JobApi) -> dict:
    if args.command == "create":
        return api.create_job(args.mode, args.group_id, args.requested_by)
    if args.command == "list":
        return api.list_jobs(args.page, args.limit)
    if args.command == "show":
        return api.get_job(args.job_id)
    if args.command == "items":
        return api.list_job_documents(args.job_id, args.status, args.page, args.limit)
    if args.command == "cancel":
        return api.cancel_job(args.job_id)
    if args.command == "retry":
        return api.retry_failed(args.job_id)
    if args.command == "result":
        return api.get_result_by_media(args.media_id)
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    log = structlog.get_logger(__name__)

    try:
        settings = Settings()
        configure_logging(settings, stream=sys.stderr)
    except ValueError as e:
        log.error("Configuration error", error=e)
        return 2

    engine = create_engine_from_settings(settings)
    try:
        if args.command == "init-db":
            init_schema(engine)
            output = {"initialized": True}
        else:
            try:
                queue = OcrQueue.from_settings(settings, make_session_factory(engine))
            except ValueError as e:
                log.error("Configuration error", error=e)
                return 2
            try:
                output = run_command(args, JobApi(queue))
            except JobNotFoundError as e:
                print(json.dumps({"error": "job not found", "id": str(e)}), file=sys.stderr)
                return 1
            except OcrResultNotFoundError as e:
                print(
                    json.dumps({"error": "OCR result not found", "media_id": str(e)}),
                    file=sys.stderr,
                )
                return 1
            finally:
                queue.close()
    finally:
        engine.dispose()

    print(json.dumps(output, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
