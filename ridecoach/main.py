"""
Command line entry point for RideCoach

Invoked by the periodic host (cron, systemd timer, launchd) once per job; the
exit code tells the host whether the run succeeded.
"""

import argparse
import asyncio
import getpass
import sys
from pathlib import Path

from ridecoach import __version__
from ridecoach.config import EncryptedFileSecretStore, get_settings
from ridecoach.models import User
from ridecoach.notifications import LoggingDispatcher
from ridecoach.orchestrator import FileSchedulingHost, JobKind, PeriodicOrchestrator
from ridecoach.storage import SyncStore
from ridecoach.utils import get_logger, setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ridecoach", description="Training sync and conflict engine"
    )
    parser.add_argument("--version", action="version", version=__version__)
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one orchestrator job")
    run.add_argument("job", choices=[job.value for job in JobKind])
    run.add_argument(
        "--schedule-file",
        type=Path,
        default=None,
        help="Where to record the next requested run (default: next to the secrets)",
    )

    add_user = sub.add_parser("add-user", help="Register an athlete")
    add_user.add_argument("--name", required=True)
    add_user.add_argument("--email")
    add_user.add_argument("--athlete-id", help="Training platform athlete id")
    add_user.add_argument("--ftp", type=int)

    set_secret = sub.add_parser("set-secret", help="Store a provider credential")
    set_secret.add_argument("name")

    return parser


async def run_job(job: JobKind, schedule_file: Path | None) -> bool:
    settings = get_settings()
    logger = get_logger("main")
    secrets = EncryptedFileSecretStore(settings.secrets_dir)
    host = FileSchedulingHost(
        schedule_file or settings.secrets_dir.parent / "schedule.json"
    )
    orchestrator = PeriodicOrchestrator.from_settings(
        settings, secrets, dispatcher=LoggingDispatcher(), host=host
    )
    try:
        report = await orchestrator.run(job)
    finally:
        await orchestrator.aclose()

    for owner in report.owners:
        for error in owner.errors:
            logger.error("Owner error", owner_id=owner.owner_id, error=error)
    logger.info(
        "Run complete",
        job=job.value,
        success=report.success,
        next_run_at=report.next_run_at.isoformat() if report.next_run_at else None,
    )
    return report.success


def add_user(args: argparse.Namespace) -> None:
    store = SyncStore.from_settings(get_settings())
    user = store.add_user(
        User(
            name=args.name,
            email=args.email,
            platform_athlete_id=args.athlete_id,
            ftp_watts=args.ftp,
        )
    )
    print(user.id)


def set_secret(name: str) -> bool:
    settings = get_settings()
    value = getpass.getpass(f"Value for {name}: ")
    return EncryptedFileSecretStore(settings.secrets_dir).set(name, value)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    logger = get_logger("main")
    logger.info("Starting RideCoach", version=__version__, command=args.command)

    try:
        if args.command == "run":
            success = asyncio.run(run_job(JobKind(args.job), args.schedule_file))
            return 0 if success else 1
        if args.command == "add-user":
            add_user(args)
            return 0
        if args.command == "set-secret":
            return 0 if set_secret(args.name) else 1
    except KeyboardInterrupt:
        logger.info("Interrupted", command=args.command)
        print("\nInterrupted")
        return 130
    return 2


if __name__ == "__main__":
    sys.exit(main())
