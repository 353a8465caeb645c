#!/usr/bin/env python3
"""CLI entrypoint for mailbox-sweeper."""

from __future__ import annotations

import argparse
import csv
import json
import logging
import sys
import warnings
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from auth_manager import (
    AuthConfig,
    AuthError,
    AuthManager,
    ConfigError,
    acquire_session,
    granted_scopes,
    required_scopes,
)
from export_report import CsvReport
from graph_client import DependencyError, GraphAPIError
from models import Criterion, ItemKind, SenderCriterion, SubjectCriterion, iso_utc
from pipeline import DeleteAction, ExportAction, resolve_mailboxes, run_pipeline
from reporting import LoggingReporter
from run_log import run_log

logger = logging.getLogger("mailbox_sweeper")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 2
MAILBOX_COLUMNS = ("userprincipalname", "mailbox", "primarysmtpaddress", "email")
CANCELLATION_WARNING = (
    "Deleting a meeting you organize sends a cancellation notice to every attendee."
)


warnings.filterwarnings(
    "ignore",
    message="urllib3 v2 only supports OpenSSL",
)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    output_format, cleaned_argv = extract_output_format(sys.argv[1:] if argv is None else argv)

    parser = argparse.ArgumentParser(
        prog="mailbox-sweeper",
        description="Export or delete Outlook calendar events and messages across mailboxes",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log Graph requests and paging")

    root = parser.add_subparsers(dest="command", required=True)

    delete = root.add_parser("delete", help="Delete matching items")
    _add_sweep_args(delete)
    delete.add_argument(
        "--confirm-delete",
        action="store_true",
        help=f"Required. {CANCELLATION_WARNING}",
    )

    export = root.add_parser("export", help="Export matching items to CSV")
    _add_sweep_args(export)
    export.add_argument("--output", default=None, help="CSV path (default: ./<kind>_export_<timestamp>.csv)")

    auth = root.add_parser("auth", help="Authentication operations")
    auth_sub = auth.add_subparsers(dest="action", required=True)

    auth_login = auth_sub.add_parser("login", help="Sign in and cache tokens for later runs")
    auth_login.add_argument("--kind", choices=[kind.value for kind in ItemKind], default=ItemKind.MEETING.value)
    auth_login.add_argument("--read-only", action="store_true")
    _add_credential_args(auth_login)

    auth_status = auth_sub.add_parser("status", help="Show auth status")
    _add_credential_args(auth_status)

    auth_logout = auth_sub.add_parser("logout", help="Clear cached tokens for a profile")
    auth_logout.add_argument("--profile", default=None)

    args = parser.parse_args(cleaned_argv)
    args.format = output_format
    return args


def _add_sweep_args(parser: argparse.ArgumentParser) -> None:
    criterion = parser.add_mutually_exclusive_group(required=True)
    criterion.add_argument("--subject", default=None, help="Exact subject to match")
    criterion.add_argument("--sender", default=None, help="Organizer or sender address to match")

    parser.add_argument("--kind", choices=[kind.value for kind in ItemKind], default=ItemKind.MEETING.value)
    parser.add_argument(
        "--mailbox",
        dest="mailboxes",
        action="extend",
        nargs="+",
        default=None,
        help="Target mailbox address(es); defaults to the signed-in account",
    )
    parser.add_argument("--mailbox-file", default=None, help="CSV with a UserPrincipalName column")
    parser.add_argument(
        "--start-after",
        default=None,
        help="Only items starting after this date (YYYY-MM-DD or ISO-8601). delete defaults to now",
    )
    parser.add_argument("--no-run-log", action="store_true", help="Do not write a run transcript")
    parser.add_argument("--disconnect", action="store_true", help="Clear the session when the run ends")
    _add_credential_args(parser)


def _add_credential_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--client-id", default=None, help="Service app id (selects service identity)")
    parser.add_argument("--tenant-id", default=None)
    parser.add_argument("--certificate-thumbprint", default=None)
    parser.add_argument("--certificate-key", default=None, help="PEM private key for the certificate")
    parser.add_argument("--auth-method", choices=["browser", "device"], default="browser")
    parser.add_argument("--profile", default=None)


def extract_output_format(argv: List[str]) -> Tuple[str, List[str]]:
    fmt = "json"
    cleaned: List[str] = []
    skip_next = False

    for index, arg in enumerate(argv):
        if skip_next:
            skip_next = False
            continue

        if arg == "--format":
            if index + 1 >= len(argv):
                raise ValueError("--format requires a value: json or text")
            fmt = argv[index + 1].strip().lower()
            skip_next = True
            continue

        if arg.startswith("--format="):
            fmt = arg.split("=", 1)[1].strip().lower()
            continue

        cleaned.append(arg)

    if fmt not in {"json", "text"}:
        raise ValueError("--format must be one of: json, text")

    return fmt, cleaned


def main(argv: Optional[List[str]] = None) -> int:
    output_format = "json"
    try:
        args = parse_args(argv)
        output_format = args.format
        configure_logging(args.verbose)

        if args.command in {"delete", "export"}:
            result = run_sweep(args)
        elif args.command == "auth":
            result = run_auth(args)
        else:
            raise RuntimeError(f"Unsupported command '{args.command}'")

        emit({"ok": True, "result": result}, output_format)
        if result.get("item_failures") or result.get("failed_mailboxes"):
            return EXIT_PARTIAL
        return EXIT_OK

    except (ConfigError, AuthError, DependencyError, GraphAPIError, ValueError, OSError) as err:
        emit(
            {
                "ok": False,
                "error": {
                    "type": err.__class__.__name__,
                    "message": str(err),
                },
            },
            output_format,
        )
        return EXIT_FATAL


def configure_logging(verbose: bool) -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "sweeper_console", False):
            root.removeHandler(handler)

    console = logging.StreamHandler(sys.stderr)
    console.sweeper_console = True
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
    root.addHandler(console)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    if not verbose:
        for noisy in ("msal", "urllib3"):
            logging.getLogger(noisy).setLevel(logging.WARNING)


def run_sweep(args: argparse.Namespace) -> Dict[str, Any]:
    deleting = args.command == "delete"
    if deleting and not args.confirm_delete:
        raise ValueError(
            "delete requires --confirm-delete. " + CANCELLATION_WARNING
        )

    criterion = build_criterion(args)
    kind = ItemKind(args.kind)
    explicit = collect_mailboxes(args.mailboxes, args.mailbox_file)
    if args.start_after:
        start_after = parse_start_after(args.start_after)
    else:
        # Evaluated once; every mailbox in the run shares it.
        start_after = now_utc() if deleting else None

    with run_log(args.command, enabled=not args.no_run_log) as log_path:
        try:
            config = build_auth_config(args, explicit)
            config.validate()
            if config.is_service and explicit is None:
                raise ConfigError("Service identity has no mailbox of its own; pass --mailbox or --mailbox-file")
            session = acquire_session(config, required_scopes(kind, mutating=deleting))
        except (ConfigError, AuthError) as err:
            logger.error("Aborting before any mailbox was processed: %s", err)
            raise

        report_path: Optional[Path] = None
        rows = None
        try:
            mailboxes = resolve_mailboxes(session, explicit)
            reporter = LoggingReporter()
            if deleting:
                if kind is ItemKind.MEETING:
                    logger.warning(CANCELLATION_WARNING)
                summary = run_pipeline(
                    session, mailboxes, criterion, DeleteAction(),
                    kind=kind, reporter=reporter, start_after=start_after,
                )
            else:
                report_path = resolve_report_path(args.output, kind)
                with CsvReport(report_path) as report:
                    summary = run_pipeline(
                        session, mailboxes, criterion, ExportAction(report),
                        kind=kind, reporter=reporter, start_after=start_after,
                    )
                    rows = report.rows
                logger.info("Report written to %s", report_path)
        finally:
            if args.disconnect:
                session.close()
                logger.info("Disconnected %s", session.principal)

    result = summary.to_dict()
    result["identity"] = session.identity
    result["principal"] = session.principal
    result["kind"] = kind.value
    result["start_after"] = iso_utc(start_after) or None
    result["run_log"] = str(log_path) if log_path else None
    if report_path is not None:
        result["report"] = str(report_path)
        result["rows"] = rows
    return result


def run_auth(args: argparse.Namespace) -> Dict[str, Any]:
    if args.action == "logout":
        manager = AuthManager(AuthConfig.from_env(profile=args.profile))
        return manager.logout()

    config = build_auth_config(args, None)
    if args.action == "status":
        return AuthManager(config).status()

    if args.action == "login":
        scopes = required_scopes(ItemKind(args.kind), mutating=not args.read_only)
        manager = AuthManager(config, scopes=scopes)
        token = manager.sign_in()
        claims = token.get("id_token_claims") or {}
        return {
            "mode": config.mode,
            "profile": config.profile,
            "account": claims.get("preferred_username") or token.get("_account_username") or config.client_id,
            "scopes": sorted(granted_scopes(token, config.is_service, manager.request_scopes)),
        }

    raise RuntimeError(f"Unsupported auth action '{args.action}'")


def build_criterion(args: argparse.Namespace) -> Criterion:
    if args.subject is not None:
        return SubjectCriterion(args.subject)
    if args.sender is not None:
        address = args.sender.strip()
        if "@" not in address:
            raise ValueError(f"--sender must be an email address, got '{args.sender}'")
        return SenderCriterion(address)
    raise ValueError("One of --subject or --sender is required")


def select_auth_mode(args: argparse.Namespace, explicit: Optional[List[str]]) -> str:
    """Service identity when credentials are passed or several mailboxes are targeted."""
    credentials = (args.client_id, args.tenant_id, args.certificate_thumbprint, args.certificate_key)
    if any(credentials):
        return "service"
    if explicit is not None and len(explicit) > 1:
        return "service"
    return "interactive"


def build_auth_config(args: argparse.Namespace, explicit: Optional[List[str]]) -> AuthConfig:
    mode = select_auth_mode(args, explicit)
    if mode == "interactive":
        return AuthConfig.from_env(profile=args.profile, login_method=args.auth_method)
    return AuthConfig.from_env(
        mode="service",
        client_id=args.client_id,
        tenant_id=args.tenant_id,
        certificate_thumbprint=args.certificate_thumbprint,
        certificate_key_path=args.certificate_key,
        profile=args.profile,
    )


def collect_mailboxes(inline: Optional[List[str]], mailbox_file: Optional[str]) -> Optional[List[str]]:
    """Explicit mailbox list in the given order, or None when none was given."""
    if inline is None and mailbox_file is None:
        return None

    mailboxes = [value.strip() for value in inline or [] if value.strip()]
    if mailbox_file:
        mailboxes.extend(read_mailbox_file(Path(mailbox_file)))
    return mailboxes


def read_mailbox_file(path: Path) -> List[str]:
    with path.open("r", encoding="utf-8-sig", newline="") as handle:
        reader = csv.DictReader(handle)
        column = None
        for name in reader.fieldnames or []:
            if name and name.strip().lower() in MAILBOX_COLUMNS:
                column = name
                break
        if column is None:
            raise ValueError(
                f"{path} needs one of these columns: UserPrincipalName, Mailbox, PrimarySmtpAddress, Email"
            )
        return [row[column].strip() for row in reader if (row.get(column) or "").strip()]


def parse_start_after(raw: str) -> datetime:
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        value = datetime.fromisoformat(text)
    except ValueError as err:
        raise ValueError(f"--start-after must be YYYY-MM-DD or ISO-8601, got '{raw}'") from err
    if value.tzinfo is None:
        value = value.astimezone()
    return value.astimezone(timezone.utc)


def resolve_report_path(output: Optional[str], kind: ItemKind) -> Path:
    if output:
        return Path(output).expanduser()
    stamp = now_utc().strftime("%Y%m%dT%H%M%SZ")
    return Path.cwd() / f"{kind.value}_export_{stamp}.csv"


def now_utc() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def emit(payload: Dict[str, Any], fmt: str) -> None:
    if fmt == "json":
        print(json.dumps(payload, indent=2, sort_keys=True))
        return

    if payload.get("ok"):
        print(render_text(payload.get("result", {})))
    else:
        err = payload.get("error", {})
        print(f"ERROR [{err.get('type')}]: {err.get('message')}")


def render_text(result: Any) -> str:
    if isinstance(result, (str, int, float, bool)) or result is None:
        return str(result)

    if isinstance(result, list):
        return "\n".join(f"- {json.dumps(entry, sort_keys=True)}" for entry in result)

    lines: List[str] = []
    for key in sorted(result.keys()):
        value = result[key]
        if isinstance(value, (dict, list)):
            lines.append(f"{key}:")
            lines.append(json.dumps(value, indent=2, sort_keys=True))
        else:
            lines.append(f"{key}: {value}")
    return "\n".join(lines)


if __name__ == "__main__":
    raise SystemExit(main())
