from __future__ import annotations

import argparse
import json
import logging
import os

from .client import (
    PollTimeout,
    ScourApiError,
    ScourClient,
    ScourPoller,
    ScourView,
    apply_disabled,
    build_source_groups,
    describe_result,
    run_group,
)
from .config import (
    ConfigError,
    Config,
    get_runtime_config,
    get_state_db_path,
    load_config_file,
    load_runtime_config,
    set_runtime_config,
)
from .services.sources_service import import_sources_file
from .storage import init_db, list_sources
from .utils import configure_logging, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("scourwatch")


def _load_config(logger: logging.Logger) -> Config | None:
    try:
        with init_db(get_state_db_path()) as conn:
            return load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None


def _build_client(args: argparse.Namespace, config: Config) -> ScourClient:
    base_url = args.api_url or os.environ.get("SW_API_URL") or config.client.base_url
    return ScourClient(
        base_url,
        timeout_s=config.client.request_timeout_seconds,
        run_timeout_s=config.client.run_timeout_seconds,
        admin_token=os.environ.get("SW_ADMIN_TOKEN"),
    )


def _build_poller(
    client: ScourClient,
    job_id: str,
    config: Config,
    logger: logging.Logger,
    watch_logs: bool = False,
) -> ScourPoller:
    def _report(view: ScourView) -> None:
        job = view.job or {}
        log_event(
            logger,
            logging.INFO,
            "scour_progress",
            job_id=job_id,
            status=job.get("status"),
            processed=job.get("processed"),
            total=job.get("total"),
            created=job.get("created"),
            activity=job.get("currentActivity"),
        )

    return ScourPoller(
        client,
        job_id,
        fast_interval=config.client.fast_poll_seconds,
        slow_interval=config.client.slow_poll_seconds,
        max_wait=config.client.max_wait_seconds,
        watch_logs=watch_logs,
        log_tail=config.client.log_tail,
        on_update=_report,
        logger=logger,
    )


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    log_event(logger, logging.INFO, "api_starting", host=args.host, port=args.port)
    uvicorn.run("scourwatch.admin:app", host=args.host, port=args.port)
    return 0


def _cmd_sources_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        count = import_sources_file(get_state_db_path(), args.path)
    except (OSError, ValueError) as exc:
        log_event(logger, logging.ERROR, "sources_import_error", path=args.path, error=str(exc))
        return 1
    log_event(logger, logging.INFO, "sources_imported", path=args.path, count=count)
    return 0


def _cmd_sources_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    with init_db(get_state_db_path()) as conn:
        sources = list_sources(conn, enabled_only=False)
    if not sources:
        log_event(
            logger,
            logging.WARNING,
            "no_sources",
            hint="Import sources with `scourwatch sources import sources.yml`",
        )
        return 1
    for source in sources:
        log_event(
            logger,
            logging.INFO,
            "source",
            source_id=source.id,
            type=source.type,
            enabled=source.enabled,
            url=source.url,
            last_scoured_at=source.last_scoured_at,
        )
    log_event(logger, logging.INFO, "sources_listed", count=len(sources))
    return 0


def _cmd_config_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        cfg = load_config_file(args.path)
        with init_db(get_state_db_path()) as conn:
            set_runtime_config(conn, cfg)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "config_imported", path=args.path)
    return 0


def _cmd_config_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        with init_db(get_state_db_path()) as conn:
            cfg = get_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    print(json.dumps(cfg, indent=2, sort_keys=True))
    return 0


def _cmd_scour_run(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load_config(logger)
    if config is None:
        return 1
    client = _build_client(args, config)
    if args.groups:
        return _run_groups(client, config, logger)
    try:
        result = client.run(
            source_ids=args.source_id or None,
            early_signals=args.early_signals,
            job_id=args.job_id,
            batch_offset=args.batch_offset,
            batch_size=args.batch_size,
            wait=False if args.follow else None,
        )
    except ScourApiError as exc:
        log_event(
            logger, logging.ERROR, "scour_run_failed", status=exc.status, detail=exc.detail
        )
        return 1
    if result.get("status") != "queued":
        log_event(logger, logging.INFO, "scour_result", summary=describe_result(result))
        return 0 if result.get("status") == "done" else 1
    job_id = str(result["jobId"])
    log_event(logger, logging.INFO, "scour_queued", job_id=job_id)
    if not (args.follow or args.early_signals):
        return 0
    return _follow(client, job_id, config, logger, watch_logs=args.watch_logs)


def _run_groups(client: ScourClient, config: Config, logger: logging.Logger) -> int:
    try:
        groups = build_source_groups(client.list_sources(), group_size=config.client.group_size)
    except ScourApiError as exc:
        log_event(logger, logging.ERROR, "sources_fetch_failed", error=str(exc))
        return 1
    failures = 0
    for group in list(groups):
        if group not in groups:
            continue
        log_event(logger, logging.INFO, "group_started", group=group.id, name=group.name)
        try:
            result = run_group(
                client,
                group,
                poller_factory=lambda job_id: _build_poller(client, job_id, config, logger),
                logger=logger,
            )
        except (ScourApiError, PollTimeout) as exc:
            log_event(logger, logging.ERROR, "group_failed", group=group.id, error=str(exc))
            return 1
        log_event(logger, logging.INFO, "group_result", group=group.id, summary=describe_result(result))
        if result.get("status") == "stopped":
            return 1
        if result.get("status") != "done":
            failures += 1
        groups = apply_disabled(groups, list(result.get("disabled_source_ids") or []))
    return 1 if failures else 0


def _follow(
    client: ScourClient,
    job_id: str,
    config: Config,
    logger: logging.Logger,
    watch_logs: bool = False,
) -> int:
    poller = _build_poller(client, job_id, config, logger, watch_logs=watch_logs)
    try:
        view = poller.run()
    except PollTimeout as exc:
        log_event(logger, logging.ERROR, "scour_stuck", job_id=job_id, error=str(exc))
        return 2
    except KeyboardInterrupt:
        poller.stop()
        log_event(logger, logging.WARNING, "follow_interrupted", job_id=job_id)
        return 130
    job = view.job or {}
    if view.finish_reason == "job_gone":
        log_event(logger, logging.WARNING, "scour_job_gone", job_id=job_id)
        return 1
    for entry in view.logs:
        log_event(logger, logging.INFO, "scour_log", time=entry.get("time"), message=entry.get("message"))
    log_event(logger, logging.INFO, "scour_result", job_id=job_id, summary=describe_result(job))
    return 0 if job.get("status") == "done" else 1


def _cmd_scour_status(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load_config(logger)
    if config is None:
        return 1
    client = _build_client(args, config)
    try:
        job = client.status(args.job_id)
    except ScourApiError as exc:
        log_event(logger, logging.ERROR, "scour_status_failed", status=exc.status, detail=exc.detail)
        return 1
    log_event(
        logger,
        logging.INFO,
        "scour_status",
        job_id=job.get("id"),
        status=job.get("status"),
        phase=job.get("phase"),
        processed=job.get("processed"),
        total=job.get("total"),
        created=job.get("created"),
        errors=job.get("errorCount"),
        activity=job.get("currentActivity"),
    )
    return 0


def _cmd_scour_logs(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load_config(logger)
    if config is None:
        return 1
    client = _build_client(args, config)
    try:
        entries = client.logs(args.job_id, limit=args.limit)
    except ScourApiError as exc:
        log_event(logger, logging.ERROR, "scour_logs_failed", status=exc.status, detail=exc.detail)
        return 1
    for entry in entries:
        log_event(logger, logging.INFO, "scour_log", time=entry.get("time"), message=entry.get("message"))
    return 0


def _cmd_scour_stop(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load_config(logger)
    if config is None:
        return 1
    client = _build_client(args, config)
    try:
        result = client.force_stop()
    except ScourApiError as exc:
        log_event(logger, logging.ERROR, "force_stop_failed", status=exc.status, detail=exc.detail)
        return 1
    log_event(
        logger,
        logging.WARNING,
        "scour_force_stopped",
        message=result.get("message"),
        job_ids=",".join(result.get("jobIds") or []) or None,
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="scourwatch", description="ScourWatch scour orchestrator")
    parser.add_argument(
        "--api-url",
        dest="api_url",
        default=None,
        help="ScourWatch API base URL (defaults to SW_API_URL or client.base_url)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Bind port")
    serve_parser.set_defaults(func=_cmd_serve)

    sources_parser = subparsers.add_parser("sources", help="Manage sources")
    sources_subparsers = sources_parser.add_subparsers(dest="sources_command", required=True)

    sources_import = sources_subparsers.add_parser("import", help="Import sources from YAML")
    sources_import.add_argument("path", help="Path to sources YAML file")
    sources_import.set_defaults(func=_cmd_sources_import)

    sources_list = sources_subparsers.add_parser("list", help="List sources")
    sources_list.set_defaults(func=_cmd_sources_list)

    config_parser = subparsers.add_parser("config", help="Runtime configuration")
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)

    config_import = config_subparsers.add_parser("import", help="Store a YAML config as runtime config")
    config_import.add_argument("path", help="Path to config YAML file")
    config_import.set_defaults(func=_cmd_config_import)

    config_show = config_subparsers.add_parser("show", help="Print the runtime config")
    config_show.set_defaults(func=_cmd_config_show)

    scour_parser = subparsers.add_parser("scour", help="Run and inspect scour jobs")
    scour_subparsers = scour_parser.add_subparsers(dest="scour_command", required=True)

    scour_run = scour_subparsers.add_parser("run", help="Start a scour job")
    scour_run.add_argument(
        "--source-id",
        action="append",
        default=[],
        help="Scour only this source (repeatable; defaults to all enabled)",
    )
    scour_run.add_argument(
        "--early-signals", action="store_true", help="Run the early signals web search"
    )
    scour_run.add_argument(
        "--groups",
        action="store_true",
        help="Scour every source group in turn, early signals first",
    )
    scour_run.add_argument("--job-id", default=None, help="Job id to use")
    scour_run.add_argument("--batch-offset", type=int, default=None, help="Source window start")
    scour_run.add_argument("--batch-size", type=int, default=None, help="Source window size")
    scour_run.add_argument(
        "--follow", action="store_true", help="Queue the job and poll it until it ends"
    )
    scour_run.add_argument(
        "--watch-logs", action="store_true", help="Poll the activity log while following"
    )
    scour_run.set_defaults(func=_cmd_scour_run)

    scour_status = scour_subparsers.add_parser("status", help="Show a job")
    scour_status.add_argument("job_id", help="Job id")
    scour_status.set_defaults(func=_cmd_scour_status)

    scour_logs = scour_subparsers.add_parser("logs", help="Show a job's activity log")
    scour_logs.add_argument("job_id", help="Job id")
    scour_logs.add_argument("--limit", type=int, default=50, help="Number of entries")
    scour_logs.set_defaults(func=_cmd_scour_logs)

    scour_stop = scour_subparsers.add_parser("stop", help="Force-stop every active job")
    scour_stop.set_defaults(func=_cmd_scour_stop)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
