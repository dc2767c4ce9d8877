"""Scheduler entry points.

    fieldsync drain photo --agency S60 --limit 500
    fieldsync reset-stuck --minutes 60
    fieldsync purge --include-failed --dry-run
    fieldsync status --json
    fieldsync import-equipment --agency S40 --contact 1234 --annee 2026 --file equipements.xlsx
"""
import argparse
import json
import logging
import sys
from typing import List, Optional

from fieldsync.bulk.importer import import_equipment_file
from fieldsync.core.config import settings
from fieldsync.core.errors import BatchInsertError, InvalidTenant, StorageError
from fieldsync.db import models
from fieldsync.db.init_db import ensure_schema
from fieldsync.db.session import SessionLocal, engine
from fieldsync.jobs.queue import JobQueue
from fieldsync.jobs.runner import JobRunner
from fieldsync.kizeo.client import KizeoClient
from fieldsync.tenancy.router import normalize_code

logger = logging.getLogger("fieldsync.cli")


def _print_counts(label: str, counts: dict) -> None:
    print(
        f"{label:<8} pending={counts['pending']:<6} processing={counts['processing']:<6} "
        f"done={counts['done']:<6} failed={counts['failed']}"
    )


def cmd_drain(db, args) -> int:
    runner = JobRunner(db, KizeoClient())
    report = runner.drain(
        args.job_type,
        agency=args.agency,
        limit=args.limit,
        chunk_size=args.chunk,
        dry_run=args.dry_run,
        reset_stuck_first=not args.no_reset,
        retry_failed=args.retry_failed,
    )
    print(json.dumps(report.to_dict(), indent=2))
    return 0


def cmd_reset_stuck(db, args) -> int:
    queue = JobQueue(db)
    stuck = queue.find_stuck(args.minutes)
    for job in stuck:
        print(f"#{job.id} {job.job_type} {job.agency_code} started_at={job.started_at} attempts={job.attempts}")
    count = queue.reset_stuck(args.minutes)
    print(f"{count} job(s) remis en attente (seuil {args.minutes} min)")
    return 0


def cmd_purge(db, args) -> int:
    queue = JobQueue(db)
    plan = [(models.STATUS_DONE, args.days)]
    if args.include_failed:
        plan.append((models.STATUS_FAILED, args.failed_days))
    for status, days in plan:
        counts = queue.count_purgeable(status, days)
        total = sum(counts.values())
        if args.dry_run:
            print(f"[dry-run] {status} > {days}j : {total} job(s) a supprimer {counts}")
            continue
        deleted = queue.purge(status, days)
        print(f"{status} > {days}j : {deleted} job(s) supprime(s)")
    return 0


def cmd_status(db, args) -> int:
    queue = JobQueue(db)
    agency = normalize_code(args.agency) if args.agency else None
    if agency:
        data = {
            "agency": agency,
            models.JOB_TYPE_PHOTO: queue.stats_by_type_and_agency(models.JOB_TYPE_PHOTO, agency),
            models.JOB_TYPE_PDF: queue.stats_by_type_and_agency(models.JOB_TYPE_PDF, agency),
        }
    else:
        data = queue.global_stats()
        data["by_agency"] = queue.stats_by_agency()
    scope = [agency] if agency else None
    data["stuck"] = len(queue.find_stuck(settings.JOBS_STUCK_THRESHOLD_MINUTES, scope))
    data["created_24h"] = queue.count_recently_created(24, scope)
    data["completed_24h"] = queue.count_recently_completed(24, scope)
    failures = queue.recent_failures(args.limit, agency=agency) if args.failed else []
    data["recent_failures"] = [job.to_dict() for job in failures]

    if args.json:
        print(json.dumps(data, indent=2, default=str))
        return 0

    for job_type in models.JOB_TYPES:
        _print_counts(job_type, data[job_type])
    if not agency:
        _print_counts("total", data["total"])
        for code, counts in data["by_agency"].items():
            _print_counts(code, counts)
    print(f"stuck={data['stuck']} created_24h={data['created_24h']} completed_24h={data['completed_24h']}")
    for job in failures:
        print(f"#{job.id} {job.job_type} {job.agency_code} {job.form_id}/{job.data_id} {job.failure_reason}")
    return 0


def cmd_import_equipment(db, args) -> int:
    result = import_equipment_file(db, args.agency, args.contact, args.annee, args.file, force=args.force)
    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    if result.errors:
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fieldsync")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    drain = sub.add_parser("drain", help="Telecharge les jobs en attente")
    drain.add_argument("job_type", choices=models.JOB_TYPES)
    drain.add_argument("--agency")
    drain.add_argument("--limit", type=int, default=settings.JOBS_DRAIN_LIMIT)
    drain.add_argument("--chunk", type=int, default=settings.JOBS_CHUNK_SIZE)
    drain.add_argument("--dry-run", action="store_true")
    drain.add_argument("--retry-failed", action="store_true")
    drain.add_argument("--no-reset", action="store_true", help="Ne pas remettre en attente les jobs bloques")
    drain.set_defaults(handler=cmd_drain)

    reset = sub.add_parser("reset-stuck", help="Remet en attente les jobs bloques en processing")
    reset.add_argument("--minutes", type=int, default=settings.JOBS_STUCK_THRESHOLD_MINUTES)
    reset.set_defaults(handler=cmd_reset_stuck)

    purge = sub.add_parser("purge", help="Supprime les jobs termines anciens")
    purge.add_argument("--days", type=int, default=settings.JOBS_PURGE_DONE_DAYS)
    purge.add_argument("--include-failed", action="store_true")
    purge.add_argument("--failed-days", type=int, default=settings.JOBS_PURGE_FAILED_DAYS)
    purge.add_argument("--dry-run", action="store_true")
    purge.set_defaults(handler=cmd_purge)

    status = sub.add_parser("status", help="Etat de la file")
    status.add_argument("--agency")
    status.add_argument("--json", action="store_true")
    status.add_argument("--failed", action="store_true", help="Affiche les derniers echecs")
    status.add_argument("--limit", type=int, default=20)
    status.set_defaults(handler=cmd_status)

    imp = sub.add_parser("import-equipment", help="Importe un fichier XLSX/CSV/XLS d'equipements")
    imp.add_argument("--agency", required=True)
    imp.add_argument("--contact", type=int, required=True)
    imp.add_argument("--annee", required=True)
    imp.add_argument("--file", required=True)
    imp.add_argument("--force", action="store_true", help="Insere aussi les doublons")
    imp.set_defaults(handler=cmd_import_equipment)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    ensure_schema(engine)
    db = SessionLocal()
    try:
        return args.handler(db, args)
    except (InvalidTenant, ValueError, OSError) as exc:
        print(f"Erreur : {exc}", file=sys.stderr)
        return 1
    except (StorageError, BatchInsertError) as exc:
        logger.error("command failed command=%s error=%s", args.command, exc)
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
