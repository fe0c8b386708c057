import argparse
import sys

from nextcloud_sync.jobs.runner import run_to_completion
from nextcloud_sync.runtime_logger import emit
from nextcloud_sync.wiring import SyncServices, get_services


def _run_job(services: SyncServices, _args, out) -> int:
    run_to_completion(services.build_job(), out)
    return 0


def _install_schema(services: SyncServices, _args, out) -> int:
    count = services.install_schema()
    print(f"Schema statements executed: {count}.", file=out)
    return 0


def _uninstall_check(services: SyncServices, args, out) -> int:
    reasons = services.uninstall_blockers(args.owner)
    if not reasons:
        print(f"{args.owner} can be uninstalled, no remote objects are tracked.", file=out)
        return 0
    for reason in reasons:
        print(reason, file=out)
    emit("WARN", "CLI", f"Uninstall blocked: owner={args.owner} tables={len(reasons)}")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nextcloud-sync", description="Nextcloud sync worker commands")
    commands = parser.add_subparsers(dest="command", required=True)

    run_job = commands.add_parser("run-job", help="Run all pending sync operations to completion")
    run_job.set_defaults(handler=_run_job)

    install = commands.add_parser("install-schema", help="Create the tracking tables")
    install.set_defaults(handler=_install_schema)

    uninstall = commands.add_parser("uninstall-check", help="Report remote objects still tracked for an owner")
    uninstall.add_argument("owner")
    uninstall.set_defaults(handler=_uninstall_check)
    return parser


def main(argv: list[str] | None = None, services: SyncServices | None = None, out=None) -> int:
    args = build_parser().parse_args(argv)
    out = out or sys.stdout
    emit("INFO", "CLI", f"Command started: command={args.command}")
    code = args.handler(services or get_services(), args, out)
    emit("INFO", "CLI", f"Command finished: command={args.command} exit_code={code}")
    return code


if __name__ == "__main__":
    sys.exit(main())
