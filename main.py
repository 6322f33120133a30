#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
TRRCMS - Import & Reconciliation Pipeline
Operator command line.

    python main.py init-db
    python main.py upload path/to/package.uhc
    python main.py stage <package_id>
    python main.py detect <package_id>
    python main.py conflicts --package <package_id>
    python main.py resolve <conflict_id> Merge --reason "same person" --survivor <id>
    python main.py approve <package_id>
    python main.py commit <package_id>
    python main.py assign-building <building_id> <collector_id>
    python main.py serve
"""

import argparse
import hashlib
import json
import sys
from pathlib import Path

from app.config import Config
from models.conflict import ConflictStatus, ConflictType, ResolutionAction
from models.import_package import ImportStatus, PackageManifest
from repositories.db_adapter import get_database
from services.exceptions import ImportPipelineError
from services.package_reader import PackageReader
from services.pipeline import ImportPipeline
from utils.logger import package_context, setup_logger


def _print(data) -> None:
    if hasattr(data, "to_dict"):
        data = data.to_dict()
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def _file_checksum(path: Path) -> str:
    sha256 = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(Config.UPLOAD_CHUNK_SIZE), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def cmd_init_db(pipeline: ImportPipeline, args) -> None:
    installed = pipeline.vocabulary.install_defaults()
    if args.vocabulary_url or Config.VOCABULARY_API_URL:
        pipeline.vocabulary.refresh_from_api(args.vocabulary_url)
    _print({'initialized': True, 'vocabularies_installed': installed})


def cmd_upload(pipeline: ImportPipeline, args) -> None:
    path = Path(args.path)
    with PackageReader(path) as reader:
        contents = reader.manifest
    manifest = PackageManifest.from_dict({
        **contents,
        'file_name': path.name,
        'checksum': args.checksum or _file_checksum(path),
        'signature': args.signature,
    })
    _print(pipeline.upload_file(path, manifest, uploaded_by=args.user))


def cmd_serve(pipeline: ImportPipeline, args) -> None:
    from services.sync_server import LocalSyncServer

    server = LocalSyncServer(pipeline.sync, host=args.host, port=args.port,
                             enable_mdns=False if args.no_mdns else None)
    server.serve_forever()


def cmd_conflicts(pipeline: ImportPipeline, args) -> None:
    if args.summary:
        _print(pipeline.conflicts.summary(args.package))
        return
    conflicts = pipeline.conflicts.list(
        package_id=args.package,
        status=ConflictStatus(args.status) if args.status else None,
        conflict_type=ConflictType(args.type) if args.type else None,
        review_queue=args.queue,
        overdue_only=args.overdue,
    )
    _print([c.to_dict() for c in conflicts])


def cmd_resolve(pipeline: ImportPipeline, args) -> None:
    choices = {}
    for item in args.field or []:
        name, _, side = item.partition("=")
        choices[name] = side
    _print(pipeline.conflicts.resolve(
        args.conflict_id, ResolutionAction(args.action), args.reason, actor=args.user,
        survivor_id=args.survivor, field_choices=choices, notes=args.notes,
    ))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="trrcms-import", description=Config.APP_TITLE)
    parser.add_argument("--user", default="operator", help="Actor recorded in the audit log")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create tables and default vocabularies")
    p.add_argument("--vocabulary-url", help="Refresh vocabularies from this endpoint")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("serve", help="Run the device sync server")
    p.add_argument("--host", default=Config.SYNC_HOST)
    p.add_argument("--port", type=int, default=Config.SYNC_PORT)
    p.add_argument("--no-mdns", action="store_true")
    p.set_defaults(func=cmd_serve)

    p = sub.add_parser("upload", help="Upload a package file")
    p.add_argument("path")
    p.add_argument("--checksum", help="Declared SHA-256 (computed from the file if omitted)")
    p.add_argument("--signature")
    p.set_defaults(func=cmd_upload)

    for name, helptext, handler in (
        ("stage", "Unpack and validate a package", lambda pl, a: _print(pl.staging.stage(a.package_id, a.user))),
        ("detect", "Run duplicate detection", lambda pl, a: _print(pl.detection.detect(a.package_id, a.user))),
        ("approve", "Approve a package for commit", lambda pl, a: _print(pl.commits.approve(a.package_id, a.user))),
        ("commit", "Commit an approved package", lambda pl, a: _print(pl.commits.commit(a.package_id, a.user))),
        ("report", "Show a package with its validation and commit reports",
         lambda pl, a: _print({
             'package': pl.packages.get(a.package_id).to_dict(),
             'validation': pl.staging.validation_report(a.package_id),
             'commit': pl.packages.get(a.package_id).commit_report,
         })),
    ):
        p = sub.add_parser(name, help=helptext)
        p.add_argument("package_id")
        p.set_defaults(func=handler)

    p = sub.add_parser("packages", help="List packages")
    p.add_argument("--status", choices=[s.value for s in ImportStatus])
    p.set_defaults(func=lambda pl, a: _print([
        pkg.to_dict() for pkg in pl.packages.list(ImportStatus(a.status) if a.status else None)]))

    for name, method in (("cancel", "cancel"), ("quarantine", "quarantine"), ("reset-commit", "reset_commit")):
        p = sub.add_parser(name, help=f"{name.replace('-', ' ').capitalize()} a package")
        p.add_argument("package_id")
        p.add_argument("--reason", required=True)
        p.set_defaults(func=lambda pl, a, m=method: _print(
            getattr(pl.packages, m)(a.package_id, a.reason, a.user)))

    p = sub.add_parser("conflicts", help="List conflicts in review order")
    p.add_argument("--package")
    p.add_argument("--status", choices=[s.value for s in ConflictStatus])
    p.add_argument("--type", choices=[t.value for t in ConflictType])
    p.add_argument("--queue")
    p.add_argument("--overdue", action="store_true")
    p.add_argument("--summary", action="store_true")
    p.set_defaults(func=cmd_conflicts)

    p = sub.add_parser("resolve", help="Resolve a conflict")
    p.add_argument("conflict_id")
    p.add_argument("action", choices=[a.value for a in ResolutionAction])
    p.add_argument("--reason", required=True)
    p.add_argument("--survivor")
    p.add_argument("--field", action="append", metavar="NAME=first|second")
    p.add_argument("--notes")
    p.set_defaults(func=cmd_resolve)

    p = sub.add_parser("escalate", help="Escalate a conflict to senior review")
    p.add_argument("conflict_id")
    p.add_argument("--reason", required=True)
    p.set_defaults(func=lambda pl, a: _print(pl.conflicts.escalate(a.conflict_id, a.reason, a.user)))

    p = sub.add_parser("assign", help="Assign a conflict to a reviewer")
    p.add_argument("conflict_id")
    p.add_argument("assignee")
    p.set_defaults(func=lambda pl, a: _print(pl.conflicts.assign(a.conflict_id, a.assignee, a.user)))

    p = sub.add_parser("assign-building", help="Assign a committed building to a field collector")
    p.add_argument("building_id")
    p.add_argument("collector")
    p.set_defaults(func=lambda pl, a: _print(pl.sync.create_assignment(a.building_id, a.collector, a.user)))

    return parser


def main(argv=None) -> int:
    """Main application entry point."""
    args = build_parser().parse_args(argv)
    logger = setup_logger()
    Config.ensure_directories()

    db = get_database()
    db.initialize()
    pipeline = ImportPipeline(db)

    try:
        with package_context(getattr(args, "package_id", None)):
            args.func(pipeline, args)
    except ImportPipelineError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
