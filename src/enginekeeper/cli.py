#!/usr/bin/env python3
"""CLI tool for resolving, updating and running the analysis engine."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import dataclass
from typing import Any

from . import __version__
from .prompts import ConsolePrompter, NonInteractivePrompter, Prompter
from .replacer import is_executable
from .resolver import CommandResolver, Resolution, ResolverSession
from .settings import (
    AUTO_UPDATE_KEY,
    SERVER_PATH_KEY,
    UPDATE_URL_KEY,
    AutoUpdatePreference,
    JsonSettingsStore,
    SettingsStore,
    auto_update_preference,
    describe_setting,
    server_path_override,
    set_auto_update_preference,
)
from .status import LifecycleReporter, StatusView
from .supervisor import EngineSupervisor
from .update_channel import ChannelRemoved, Unmodified, Updated

_AUTO_UPDATE_CHOICES = {
    "on": AutoUpdatePreference.ENABLED,
    "off": AutoUpdatePreference.DISABLED,
    "unset": AutoUpdatePreference.UNSET,
}


@dataclass
class EngineDoctorReport:
    """Snapshot of everything that feeds engine resolution."""

    platform: str
    arch: str
    override: str | None
    override_source: str
    override_executable: bool
    cached_path: str
    cached_executable: bool
    cached_digest: str | None
    update_pending: bool
    auto_update: str
    update_url: str | None
    update_url_source: str

    def as_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


def _build_resolver(settings: SettingsStore, prompter: Prompter) -> CommandResolver:
    return CommandResolver(settings, prompter, session=ResolverSession())


def _doctor_report(resolver: CommandResolver, settings: SettingsStore) -> EngineDoctorReport:
    key = resolver.platform_key
    cached = resolver.cached_binary()
    override, override_source = describe_setting(settings, SERVER_PATH_KEY)
    url, url_source = describe_setting(settings, UPDATE_URL_KEY)
    return EngineDoctorReport(
        platform=key.system,
        arch=key.arch,
        override=override,
        override_source=override_source,
        override_executable=bool(override) and is_executable(override),
        cached_path=str(cached.primary_path),
        cached_executable=cached.is_ready,
        cached_digest=cached.content_hash(),
        update_pending=cached.has_pending_update,
        auto_update=auto_update_preference(settings).value,
        update_url=url,
        update_url_source=url_source,
    )


def _print_doctor(report: EngineDoctorReport, as_json: bool) -> None:
    """Render `doctor` command output."""
    if as_json:
        print(json.dumps(report.as_dict(), indent=2))
        return

    print(f"enginekeeper {__version__} doctor")
    print(f"platform: {report.platform}/{report.arch}")
    if report.override:
        state = "OK" if report.override_executable else "MISSING"
        print(f"[{state}] override ({report.override_source}): {report.override}")
        print("      note: auto-update is suppressed while an override is set")
    state = "OK" if report.cached_executable else "MISSING"
    print(f"[{state}] cached build: {report.cached_path}")
    if report.cached_digest:
        print(f"      md5: {report.cached_digest}")
    if report.update_pending:
        print("      a staged update will be applied on the next start")
    print(f"auto-update: {report.auto_update}")
    if report.update_url:
        print(f"update channel ({report.update_url_source}): {report.update_url}")
    else:
        print("update channel: <not configured>")


def _print_resolution(resolution: Resolution, session: ResolverSession, as_json: bool) -> None:
    outcome = session.last_outcome
    if as_json:
        payload = {
            "ok": resolution.ok,
            "command": resolution.command.argv if resolution.command else None,
            "state": resolution.state.value,
            "reason": resolution.reason,
            "update_available": session.update_available,
            "update_outcome": outcome.describe() if outcome is not None else None,
        }
        print(json.dumps(payload, indent=2))
        return

    if resolution.command is None:
        print(f"No engine command: {resolution.reason}")
        return
    print(resolution.command.path)
    if session.update_available:
        print("Update downloaded; it will be applied on the next start.", file=sys.stderr)
    elif outcome is not None and not isinstance(outcome, Updated):
        print(f"Update check: {outcome.describe()}", file=sys.stderr)


def _run_update(resolver: CommandResolver, settings: SettingsStore) -> tuple[str, str]:
    """Run one foreground update check for the cached build.

    Returns:
        (result, details) where result is one of: updated, current, skipped, failed.
    """
    if server_path_override(settings):
        return "skipped", "an explicit server path is configured"

    cached = resolver.cached_binary()
    current_hash = cached.content_hash() if cached.is_ready else None
    outcome = resolver.channel.check_and_fetch(
        resolver.platform_key, __version__, current_hash, cached.staged_path
    )
    if isinstance(outcome, ChannelRemoved):
        set_auto_update_preference(settings, AutoUpdatePreference.DISABLED)
    if isinstance(outcome, Updated):
        return "updated", f"{outcome.describe()}; applied on the next start"
    if isinstance(outcome, Unmodified):
        return "current", outcome.describe()
    return "failed", outcome.describe()


def _run_config(args: argparse.Namespace, settings: JsonSettingsStore) -> None:
    action = args.config_command
    if action == "set-path":
        settings.set(SERVER_PATH_KEY, args.path)
    elif action == "unset-path":
        settings.unset(SERVER_PATH_KEY)
    elif action == "auto-update":
        set_auto_update_preference(settings, _AUTO_UPDATE_CHOICES[args.value])
    elif action == "set-url":
        settings.set(UPDATE_URL_KEY, args.url)
    elif action == "unset-url":
        settings.unset(UPDATE_URL_KEY)

    payload: dict[str, Any] = {}
    for key in (SERVER_PATH_KEY, AUTO_UPDATE_KEY, UPDATE_URL_KEY):
        value, source = describe_setting(settings, key)
        payload[key] = {"value": value, "source": source}
    print(f"settings: {settings.path}")
    print(json.dumps(payload, indent=2, sort_keys=True))


def _run_engine(resolver: CommandResolver, settings: JsonSettingsStore, watch: bool) -> int:
    reporter = LifecycleReporter(resolver.session)

    def _show(view: StatusView) -> None:
        print(f"[{view.state.value}] {view.text}", flush=True)
        if view.detail:
            for line in view.detail.splitlines():
                print(f"    {line}", flush=True)
        if view.missing_project:
            print("    no project file found in the workspace", flush=True)

    reporter.subscribe(_show)
    supervisor = EngineSupervisor(resolver, reporter)
    resolution = supervisor.start()
    if resolution.command is None:
        print(f"No engine command: {resolution.reason}", file=sys.stderr)
        return 1

    watcher = None
    if watch:
        from .watcher import SettingsWatcher

        watcher = SettingsWatcher(settings.path, supervisor.restart)
        watcher.start()

    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        if watcher is not None:
            watcher.stop()
        supervisor.stop()
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Resolve, self-update and run the analysis engine binary"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--non-interactive",
        action="store_true",
        help="Dismiss every prompt instead of asking",
    )
    parser.add_argument("--settings", help="Path to settings.json (default: per-user)")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    resolve_parser = subparsers.add_parser("resolve", help="Print the engine command to launch")
    resolve_parser.add_argument("--json", action="store_true", help="Output as JSON")
    resolve_parser.add_argument(
        "--no-wait",
        action="store_true",
        help="Don't wait for the background update check",
    )

    doctor_parser = subparsers.add_parser("doctor", help="Report engine resolution inputs")
    doctor_parser.add_argument("--json", action="store_true", help="Output as JSON")

    update_parser = subparsers.add_parser("update", help="Check the update channel now")
    update_parser.add_argument("--json", action="store_true", help="Output as JSON")

    config_parser = subparsers.add_parser("config", help="Show or change settings")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("show", help="Show effective settings")
    set_path = config_sub.add_parser("set-path", help="Use an explicit engine executable")
    set_path.add_argument("path")
    config_sub.add_parser("unset-path", help="Return to the auto-updated build")
    auto_update = config_sub.add_parser("auto-update", help="Set the auto-update preference")
    auto_update.add_argument("value", choices=sorted(_AUTO_UPDATE_CHOICES))
    set_url = config_sub.add_parser("set-url", help="Set the update channel URL")
    set_url.add_argument("url")
    config_sub.add_parser("unset-url", help="Clear the update channel URL")

    run_parser = subparsers.add_parser("run", help="Run the engine and print its status")
    run_parser.add_argument(
        "--watch", action="store_true", help="Restart the engine when settings change"
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    settings = JsonSettingsStore(args.settings)
    prompter: Prompter = NonInteractivePrompter() if args.non_interactive else ConsolePrompter()

    if args.command == "resolve":
        resolver = _build_resolver(settings, prompter)
        try:
            resolution = resolver.resolve()
            if not args.no_wait:
                resolution.wait()
            _print_resolution(resolution, resolver.session, as_json=args.json)
        finally:
            resolver.close()
        if not resolution.ok:
            sys.exit(1)

    elif args.command == "doctor":
        resolver = _build_resolver(settings, prompter)
        _print_doctor(_doctor_report(resolver, settings), as_json=args.json)

    elif args.command == "update":
        resolver = _build_resolver(settings, prompter)
        try:
            result, details = _run_update(resolver, settings)
        finally:
            resolver.close()
        if args.json:
            print(json.dumps({"result": result, "details": details}, indent=2))
        else:
            key = resolver.platform_key
            print(f"[{result.upper()}] {key.system}/{key.arch}: {details}")
        if result == "failed":
            sys.exit(1)

    elif args.command == "config":
        _run_config(args, settings)

    elif args.command == "run":
        resolver = _build_resolver(settings, prompter)
        try:
            code = _run_engine(resolver, settings, watch=args.watch)
        finally:
            resolver.close()
        sys.exit(code)

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
