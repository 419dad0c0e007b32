"""
Deployer CLI — entry point for all operations.

Usage:
    deployer create NAME REPO [--branch B] [--db postgres|mysql] [--domain D] [--port P]
    deployer update NAME [--branch B]       # zero-downtime update
    deployer rollback NAME [--version V]    # previous release by default
    deployer remove NAME [--keep-data]
    deployer status NAME | list | health NAME
    deployer start|stop|restart NAME
    deployer config status|set-credentials|migrate|rotate-key
    deployer db list|backup|restore
    deployer version
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

from deployer.config import DeployerConfig
from deployer.errors import DeployerError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deployer",
        description="Deployer — versioned releases, zero-downtime updates and encrypted secrets.",
    )
    parser.add_argument("--version", action="store_true", help="Show version and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--config", type=str, help="Config file (default: $DEPLOYER_CONFIG)")
    parser.add_argument("--json", action="store_true", help="Print results as JSON")

    subparsers = parser.add_subparsers(dest="command")

    # create
    create_parser = subparsers.add_parser("create", help="Deploy a new project")
    create_parser.add_argument("name", help="Project name")
    create_parser.add_argument("repo", help="Git repository URL")
    create_parser.add_argument("--branch", "-b", help="Branch (default: main, falls back to master)")
    create_parser.add_argument("--db", choices=["postgres", "mysql"], help="Provision a database")
    create_parser.add_argument("--domain", help="Public domain (default: <name>.<domain suffix>)")
    create_parser.add_argument("--port", type=int, help="Container port the app listens on")

    # update
    update_parser = subparsers.add_parser("update", help="Deploy the latest code (zero downtime)")
    update_parser.add_argument("name")
    update_parser.add_argument("--branch", "-b", help="Switch to another branch")

    # rollback
    rollback_parser = subparsers.add_parser("rollback", help="Return to an earlier release")
    rollback_parser.add_argument("name")
    rollback_parser.add_argument("--version", dest="release", help="Release id (default: previous)")

    # remove
    remove_parser = subparsers.add_parser("remove", help="Remove a project")
    remove_parser.add_argument("name")
    remove_parser.add_argument("--keep-data", action="store_true", help="Keep database and volumes")

    for command, help_text in [
        ("status", "Show project status"),
        ("health", "Run health checks"),
        ("start", "Start the project's containers"),
        ("stop", "Stop the project's containers"),
        ("restart", "Restart the project's containers"),
    ]:
        subparsers.add_parser(command, help=help_text).add_argument("name")

    subparsers.add_parser("list", help="List deployed projects")

    # config
    config_parser = subparsers.add_parser("config", help="Manage deployer credentials")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("status", help="Show where credentials come from")
    set_creds = config_sub.add_parser("set-credentials", help="Store proxy credentials encrypted")
    set_creds.add_argument("--email", required=True)
    set_creds.add_argument("--password", help="Prompted for when omitted")
    config_sub.add_parser("migrate", help="Move legacy plaintext credentials into the vault")
    config_sub.add_parser("rotate-key", help="Re-encrypt every secret under a new master key")

    # db
    db_parser = subparsers.add_parser("db", help="Manage provisioned databases")
    db_sub = db_parser.add_subparsers(dest="db_command")
    db_sub.add_parser("list", help="List provisioned databases")
    backup = db_sub.add_parser("backup", help="Dump a project's database")
    backup.add_argument("name")
    backup.add_argument("--output", "-o", help="Output file (default: <projects>/_databases/backups/...)")
    restore = db_sub.add_parser("restore", help="Load a dump into a project's database")
    restore.add_argument("name")
    restore.add_argument("file")

    # version
    subparsers.add_parser("version", help="Show version")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.version or args.command == "version":
        from deployer import __version__

        print(f"deployer {__version__}")
        return 0

    if args.command is None:
        parser.print_help()
        return 1

    try:
        cfg = DeployerConfig.load(args.config)
        if args.command == "config":
            return _cmd_config(args, cfg)
        if args.command == "db":
            return _cmd_db(args, cfg)
        return _cmd_project(args, cfg)
    except (DeployerError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _print_result(result, as_json: bool) -> None:
    if as_json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
        return
    if result.error is not None:
        print(f"Error: {result.error}", file=sys.stderr)
    meta = result.metadata
    if meta is not None:
        print(f"  Project:  {meta.name} ({meta.state.value})")
        print(f"  Repo:     {meta.repo} [{meta.branch}]")
        print(f"  Release:  {meta.current_version or '-'}")
        if meta.previous_version:
            print(f"  Previous: {meta.previous_version}")
        if meta.domain:
            print(f"  Domain:   {meta.domain}")
        if meta.database:
            print(f"  Database: {meta.database}")
    for key, value in result.details.items():
        if key == "projects":
            for name, summary in sorted(value.items()):
                state = summary.get("state", "?")
                print(f"  {name:<24} {state:<12} {summary.get('current_version') or '-'}")
        elif key == "health":
            for check in value["checks"]:
                mark = "ok" if check["passed"] else "FAIL"
                print(f"  [{mark:>4}] {check['name']}: {check['message']}")
        elif key == "releases":
            print(f"  Releases ({len(value)}):")
            for version in reversed(value):
                marker = " (current)" if version == result.details.get("current") else ""
                print(f"    {version}{marker}")
        elif key in ("runtime", "pruned") and value:
            print(f"  {key.capitalize()}: {value}")


def _cmd_project(args: argparse.Namespace, cfg: DeployerConfig) -> int:
    from deployer.orchestrator import DeploymentOrchestrator

    orch = DeploymentOrchestrator.from_config(cfg)

    if args.command == "create":
        result = orch.create(
            args.name, args.repo, branch=args.branch, db=args.db, domain=args.domain, port=args.port
        )
    elif args.command == "update":
        result = orch.update(args.name, branch=args.branch)
    elif args.command == "rollback":
        result = orch.rollback(args.name, version=args.release)
    elif args.command == "remove":
        result = orch.remove(args.name, keep_data=args.keep_data)
    elif args.command == "list":
        result = orch.list_projects()
    elif args.command in ("status", "health", "start", "stop", "restart"):
        result = getattr(orch, args.command)(args.name)
    else:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    _print_result(result, args.json)
    return 0 if result.ok else 1


def _cmd_config(args: argparse.Namespace, cfg: DeployerConfig) -> int:
    from deployer.credentials import PROXY_CREDENTIALS, CredentialResolver
    from deployer.vault import SecretsVault

    vault = SecretsVault.from_config(cfg)
    resolver = CredentialResolver.from_config(cfg, vault=vault)

    if args.config_command == "status":
        print(f"  Projects dir:    {cfg.projects_dir}")
        print(f"  Vault:           {cfg.vault_dir}")
        if vault.env_key:
            key_state = "environment"
        else:
            key_state = "present" if vault.key_exists() else "not created"
        print(f"  Master key:      {key_state}")
        print(f"  Proxy creds:     {resolver.get_credential_source(PROXY_CREDENTIALS)}")
        if resolver.has_legacy_credentials(PROXY_CREDENTIALS):
            print("  Legacy plaintext credentials found; run 'deployer config migrate'")
        return 0

    if args.config_command == "set-credentials":
        password = args.password or getpass.getpass("Proxy password: ")
        resolver.set(PROXY_CREDENTIALS, {"email": args.email, "password": password})
        print("Credentials stored (encrypted)")
        return 0

    if args.config_command == "migrate":
        if resolver.migrate(PROXY_CREDENTIALS):
            print("Legacy credentials moved into the vault")
        else:
            print("Nothing to migrate")
        return 0

    if args.config_command == "rotate-key":
        count = vault.rotate_key()
        print(f"Master key rotated; {count} secret(s) re-encrypted")
        return 0

    print("Usage: deployer config {status,set-credentials,migrate,rotate-key}")
    return 1


def _cmd_db(args: argparse.Namespace, cfg: DeployerConfig) -> int:
    from deployer.provision import ProvisionReconciler

    reconciler = ProvisionReconciler.from_config(cfg)

    if args.db_command == "list":
        records = reconciler.list_records()
        if not records:
            print("No databases provisioned")
        for kind, project, record in records:
            print(f"  {project:<24} {kind:<9} {record.database:<24} {record.username}")
        return 0

    if args.db_command == "backup":
        if args.output:
            dest = Path(args.output)
        else:
            stamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
            dest = cfg.databases_dir / "backups" / f"{args.name}-{stamp}.sql"
        reconciler.backup(args.name, dest)
        print(f"Backup written to {dest}")
        return 0

    if args.db_command == "restore":
        reconciler.restore(args.name, Path(args.file))
        print(f"Restored {args.name} from {args.file}")
        return 0

    print("Usage: deployer db {list,backup,restore}")
    return 1


if __name__ == "__main__":
    sys.exit(main())
