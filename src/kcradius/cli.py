from __future__ import annotations

import argparse
import getpass
import json
import sys
import textwrap
from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable

from ._version import __version__
from .assets import NON_RUNTIME_KINDS, AssetKind, select_assets
from .client import GitHubReleaseClient
from .config import InstallerSettings, load_settings, merge_settings, redact_token, save_settings, settings_path
from .errors import InstallError, InvalidInput, NoArtifactFound
from .host import KeycloakService, PackageManager, probe_listeners
from .logging_config import setup_logging
from .radius_config import (
    DEFAULT_ACCOUNT_PORT,
    DEFAULT_AUTH_PORT,
    RadiusPluginConfig,
    generate_secret,
    load_config_document,
    validate_port,
    validate_secret,
)
from .reconciler import Reconciler, ReconcileResult
from .source_build import SourceBuilder


def _print_table(rows: list[list[str]]) -> None:
    widths = [max(len(r[i]) for r in rows) for i in range(len(rows[0]))]
    for row in rows:
        print("  ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip())


def _prompt(question: str, default: str | None = None, *, secret: bool = False) -> str:
    label = f"{question} [{'hidden' if secret else default}]: " if default else f"{question}: "
    value = getpass.getpass(label) if secret else input(label)
    value = value.strip() if not secret else value
    return value if value else (default or "")


def _ask_until_valid(question: str, default: str | None, validate: Callable[[str], Any], *, secret: bool = False) -> Any:
    while True:
        raw = _prompt(question, default, secret=secret)
        try:
            return validate(raw)
        except InvalidInput as e:
            print(f"error: {e}", file=sys.stderr)


def _read_secret_file(path: str) -> str:
    try:
        text = Path(path).expanduser().read_text(encoding="utf-8")
    except OSError as e:
        raise InvalidInput(f"Could not read secret file {path}: {e}") from e
    return text.rstrip("\r\n")


def _existing_document(config_path: Path) -> dict[str, Any]:
    try:
        return load_config_document(config_path) or {}
    except InstallError:
        return {}


def _existing_secret(doc: dict[str, Any]) -> str | None:
    value = doc.get("sharedSecret")
    return value if isinstance(value, str) and value else None


def _existing_port(doc: dict[str, Any], key: str) -> int | None:
    try:
        return validate_port(doc[key], name=key)
    except (KeyError, InvalidInput):
        return None


def _settings_from_args(args: argparse.Namespace) -> InstallerSettings:
    overrides = {
        "keycloak_home": getattr(args, "keycloak_home", None),
        "tag": getattr(args, "tag", None),
        "config_path": getattr(args, "config_path", None),
        "repo": getattr(args, "repo", None),
        "source": getattr(args, "source", None),
        "source_url": getattr(args, "source_url", None),
        "source_ref": getattr(args, "source_ref", None),
        "work_dir": getattr(args, "work_dir", None),
        "service_name": getattr(args, "service", None),
    }
    if getattr(args, "include_secondary", False):
        overrides["include_secondary"] = True
    if getattr(args, "skip_packages", False):
        overrides["install_packages"] = False
    if getattr(args, "no_verify", False):
        overrides["verify"] = False
    if getattr(args, "no_rollback", False):
        overrides["rollback_on_failure"] = False
    try:
        return merge_settings(load_settings(), overrides=overrides)
    except ValueError as e:
        raise InvalidInput(str(e)) from e


def _desired_config(args: argparse.Namespace, settings: InstallerSettings) -> RadiusPluginConfig:
    interactive = not args.non_interactive and sys.stdin.isatty()
    # Re-runs keep the current secret and ports unless told otherwise.
    existing = _existing_document(settings.radius_config_path())

    if args.secret_file:
        secret = validate_secret(_read_secret_file(args.secret_file))
    elif args.secret is not None:
        secret = validate_secret(args.secret)
    else:
        default_secret = _existing_secret(existing) or generate_secret()
        if interactive:
            secret = _ask_until_valid(
                "RADIUS shared secret (must match every RADIUS client)", default_secret, validate_secret, secret=True
            )
        else:
            secret = default_secret

    ports: dict[str, int] = {}
    for field_name, arg_value, fallback, question in (
        ("authPort", args.auth_port, DEFAULT_AUTH_PORT, "RADIUS auth port"),
        ("accountPort", args.account_port, DEFAULT_ACCOUNT_PORT, "RADIUS accounting port"),
    ):
        default = _existing_port(existing, field_name) or fallback
        if arg_value is not None:
            ports[field_name] = validate_port(arg_value, name=field_name)
        elif interactive:
            ports[field_name] = _ask_until_valid(
                question, str(default), lambda raw, n=field_name: validate_port(raw, name=n)
            )
        else:
            ports[field_name] = default

    return RadiusPluginConfig(
        sharedSecret=secret,
        authPort=ports["authPort"],
        accountPort=ports["accountPort"],
        externalDictionary=args.external_dictionary,
    )


def _release_client(settings: InstallerSettings) -> GitHubReleaseClient:
    return GitHubReleaseClient(
        repo=settings.repo,
        api_url=settings.api_url,
        token=settings.github_token,
        timeout_s=settings.timeout_s,
    )


def _build_reconciler(settings: InstallerSettings, client: GitHubReleaseClient | None) -> Reconciler:
    builder = None
    if settings.source == "source":
        builder = SourceBuilder(settings.source_url, ref=settings.source_ref, work_dir=settings.work_dir)
    return Reconciler(
        settings,
        service_factory=lambda home: KeycloakService(home, unit=settings.service_name),
        releases=client,
        builder=builder,
        packages=PackageManager() if settings.install_packages else None,
    )


def _result_payload(result: ReconcileResult) -> dict[str, Any]:
    return {
        "tag": result.tag,
        "artifacts": list(result.artifacts),
        "installed": [str(p) for p in result.installed],
        "removed": [str(p) for p in result.removed],
        "config_path": str(result.config_path),
        "config_created": result.config_created,
        "restarted": result.restarted,
        "warnings": list(result.warnings),
        "listeners": list(result.listeners),
    }


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="kc-radius",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Install and configure the Keycloak RADIUS plugin.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              KEYCLOAK_HOME, KC_RADIUS_TAG, KC_RADIUS_CONFIG_PATH, KC_RADIUS_REPO, GITHUB_TOKEN,
              KC_RADIUS_SETTINGS_PATH, KC_RADIUS_LOG_LEVEL, KC_RADIUS_LOG_FILE
            """
        ),
    )
    p.add_argument("--version", action="version", version=f"kc-radius {__version__}")
    p.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    p.add_argument("--log-file", help="Also write a DEBUG log to this file")

    def _add_host_overrides(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--keycloak-home", help="Keycloak install root (default: /opt/keycloak)")
        parser.add_argument("--config-path", help="radius.config location (default: <home>/config/radius.config)")
        parser.add_argument("--service", help="systemd unit name (default: keycloak)")

    def _add_release_overrides(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--tag", help="Pin a release tag instead of the latest release")
        parser.add_argument("--repo", help="GitHub repository owner/name")

    sub = p.add_subparsers(dest="cmd", required=True)

    # install
    inst = sub.add_parser("install", help="Fetch, install and configure the RADIUS plugin")
    _add_host_overrides(inst)
    _add_release_overrides(inst)
    inst.add_argument("--source", choices=["release", "source"], help="Install a release asset or build from git")
    inst.add_argument("--source-url", help="Git URL for --source source")
    inst.add_argument("--source-ref", help="Branch or tag for --source source")
    inst.add_argument("--work-dir", help="Checkout directory for --source source")
    inst.add_argument("--include-secondary", action="store_true", help="Also install the mikrotik-radius-plugin jar")
    inst.add_argument("--secret", help="Shared secret (visible in the process list; prefer --secret-file)")
    inst.add_argument("--secret-file", help="Read the shared secret from this file")
    inst.add_argument("--auth-port", help=f"RADIUS auth port (default: current value, else {DEFAULT_AUTH_PORT})")
    inst.add_argument("--account-port", help=f"RADIUS accounting port (default: current value, else {DEFAULT_ACCOUNT_PORT})")
    inst.add_argument("--external-dictionary", help="Path to an external RADIUS dictionary")
    inst.add_argument("-y", "--non-interactive", action="store_true", help="Never prompt; use flags and defaults")
    inst.add_argument("--skip-packages", action="store_true", help="Do not install system packages")
    inst.add_argument("--no-verify", action="store_true", help="Skip the listener check")
    inst.add_argument("--no-rollback", action="store_true", help="Leave partial changes in place on failure")
    inst.add_argument("--json", action="store_true", help="Output JSON")

    # assets
    assets = sub.add_parser("assets", help="Show release assets and which one would be installed")
    _add_release_overrides(assets)
    assets.add_argument("--include-secondary", action="store_true")
    assets.add_argument("--json", action="store_true", help="Output JSON")

    sub.add_parser("secret", help="Print a freshly generated shared secret")

    verify = sub.add_parser("verify", help="Check that the RADIUS UDP listeners are bound")
    verify.add_argument("--auth-port", default=str(DEFAULT_AUTH_PORT))
    verify.add_argument("--account-port", default=str(DEFAULT_ACCOUNT_PORT))

    logs = sub.add_parser("logs", help="Show recent Keycloak service log lines")
    _add_host_overrides(logs)
    logs.add_argument("--filter", dest="contains", help="Only lines containing this text")
    logs.add_argument("--lines", type=int, default=200, help="How many journal entries to read (default: 200)")

    # config
    cfg = sub.add_parser("config", help="Manage installer settings")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print settings file path")
    cfg_sub.add_parser("show", help="Show effective settings (token redacted)")
    cfg_set = cfg_sub.add_parser("set", help="Persist settings")
    cfg_set.add_argument("--keycloak-home")
    cfg_set.add_argument("--config-path")
    cfg_set.add_argument("--tag")
    cfg_set.add_argument("--repo")
    cfg_set.add_argument("--api-url")
    cfg_set.add_argument("--github-token")
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--source", choices=["release", "source"])
    cfg_set.add_argument("--source-url")
    cfg_set.add_argument("--source-ref")
    cfg_set.add_argument("--service", dest="service_name")
    cfg_set.add_argument("--include-secondary", choices=["yes", "no"])

    return p


def cmd_install(args: argparse.Namespace) -> int:
    settings = _settings_from_args(args)
    desired = _desired_config(args, settings)
    client = _release_client(settings) if settings.source == "release" else None
    try:
        result = _build_reconciler(settings, client).reconcile(desired)
    finally:
        if client is not None:
            client.close()

    if args.json:
        print(json.dumps(_result_payload(result), indent=2, sort_keys=True))
        return 0

    print(f"tag: {result.tag}")
    for path in result.installed:
        print(f"installed: {path}")
    for path in result.removed:
        print(f"removed: {path}")
    print(f"config: {result.config_path} ({'created' if result.config_created else 'updated'})")
    for line in result.listeners:
        print(f"listener: {line}")
    for warning in result.warnings:
        print(f"warning: {warning}", file=sys.stderr)
    print("Use exactly the sharedSecret from the config file on every RADIUS client.")
    return 0


def cmd_assets(args: argparse.Namespace) -> int:
    settings = _settings_from_args(args)
    with _release_client(settings) as client:
        release = client.resolve_release(settings.tag)

    try:
        selection = select_assets(release, include_secondary=settings.include_secondary)
    except NoArtifactFound:
        selection = None
    chosen = set()
    if selection is not None:
        chosen = {a.name for a in (selection.primary, selection.secondary, selection.archive) if a is not None}

    if args.json:
        payload = {
            "tag": release.tag_name,
            "assets": [
                {**asdict(a), "kind": a.kind.value, "selected": a.name in chosen} for a in release.assets
            ],
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0 if chosen else 1

    print(f"tag: {release.tag_name}")
    rows = [["ASSET", "KIND", "ACTION"]]
    for a in release.assets:
        if a.name in chosen:
            action = "install" if a.kind is AssetKind.JAR else "extract"
        elif a.kind in NON_RUNTIME_KINDS:
            action = "excluded"
        else:
            action = "-"
        rows.append([a.name, a.kind.value, action])
    _print_table(rows)
    if not chosen:
        print("error: no installable asset in this release", file=sys.stderr)
        return 1
    return 0


def cmd_secret(args: argparse.Namespace) -> int:
    print(generate_secret())
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    ports = (validate_port(args.auth_port, name="auth port"), validate_port(args.account_port, name="account port"))
    found = probe_listeners(ports)
    if found is None:
        print("warning: could not run 'ss'; listener check skipped", file=sys.stderr)
        return 0
    for port in ports:
        lines = found.get(port) or []
        if not lines:
            print(f"warning: no UDP listener on port {port}", file=sys.stderr)
        for line in lines:
            print(line)
    return 0


def cmd_logs(args: argparse.Namespace) -> int:
    settings = _settings_from_args(args)
    service = KeycloakService(settings.home(), unit=settings.service_name)
    for line in service.logs(lines=args.lines, contains=args.contains):
        print(line)
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(settings_path()))
        return 0

    if args.subcmd == "show":
        settings = merge_settings(load_settings())
        d = {k: (str(v) if isinstance(v, Path) else v) for k, v in asdict(settings).items()}
        d["github_token"] = redact_token(settings.github_token)
        d["radius_config_path"] = str(settings.radius_config_path())
        print(json.dumps(d, indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        current = load_settings()
        changes = {
            "keycloak_home": args.keycloak_home,
            "config_path": args.config_path,
            "tag": args.tag,
            "repo": args.repo,
            "api_url": args.api_url,
            "github_token": args.github_token,
            "timeout_s": args.timeout_s,
            "source": args.source,
            "source_url": args.source_url,
            "source_ref": args.source_ref,
            "service_name": args.service_name,
        }
        if args.include_secondary is not None:
            changes["include_secondary"] = args.include_secondary == "yes"
        try:
            new_settings = merge_settings(current, env={}, overrides=changes)
        except ValueError as e:
            raise InvalidInput(str(e)) from e
        path = save_settings(new_settings)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_file, default_level="INFO" if args.cmd == "install" else "WARNING")
    try:
        if args.cmd == "install":
            return cmd_install(args)
        if args.cmd == "assets":
            return cmd_assets(args)
        if args.cmd == "secret":
            return cmd_secret(args)
        if args.cmd == "verify":
            return cmd_verify(args)
        if args.cmd == "logs":
            return cmd_logs(args)
        if args.cmd == "config":
            return cmd_config(args)
        raise AssertionError("unreachable")
    except InstallError as e:
        print(f"error: [{e.phase}] {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("error: interrupted", file=sys.stderr)
        return 130
    except EOFError:
        print("error: input closed; rerun with --non-interactive", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
