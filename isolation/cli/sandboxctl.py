#!/usr/bin/env python3
"""
sandboxctl - Command line interface for the Sandbox Isolation Engine

Provides:
- Run commands in ephemeral isolated sandboxes
- List built-in, stored and declarative security profiles
- Export the persisted audit trail as JSON, CSV or HTML
- Show container runtime and packet filter detection
- Validate YAML security profile files

Usage:
    sandboxctl run -- python3 job.py
    sandboxctl run --profile high-risk --memory 256 --timeout 60 -- ./build.sh
    sandboxctl profiles -o json
    sandboxctl report --format csv --output audit.csv
    sandboxctl capabilities
    sandboxctl validate-profile profiles.yaml

Environment Variables:
    ISOLATION_CONFIG_FILE       - Path to the engine configuration file
    ISOLATION_POLICY_STORE_DIR  - Policy store directory
"""

import argparse
import dataclasses
import json
import os
import sys
import time
from typing import List, Optional

from ..config.engine_config import EngineConfig, load_engine_config
from ..errors import IsolationError
from ..logging_config import setup_logging
from ..network.packet_filter import IptablesPacketFilter
from ..sandbox.container_runtime import CliContainerRuntime
from ..sandbox.models import SandboxConfig
from ..security.audit_report import RENDERERS, render_audit
from ..security.models import SecurityAudit
from ..security.policy_store import PolicyStore
from ..security.profiles import load_profile_file
from ..security.security_manager import SecurityManager


# ANSI color codes
class Colors:
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    CYAN = '\033[96m'
    GRAY = '\033[90m'

    @classmethod
    def disable(cls):
        """Disable colors for non-TTY output."""
        cls.RESET = ''
        cls.BOLD = ''
        cls.RED = ''
        cls.GREEN = ''
        cls.YELLOW = ''
        cls.CYAN = ''
        cls.GRAY = ''


RISK_COLORS = {
    'low': 'GREEN',
    'medium': 'YELLOW',
    'high': 'RED',
    'critical': 'RED',
}


def format_duration(seconds: float) -> str:
    """Format duration as human-readable string."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        return f"{int(seconds // 60)}m {int(seconds % 60)}s"
    else:
        hours = int(seconds // 3600)
        mins = int((seconds % 3600) // 60)
        return f"{hours}h {mins}m"


def print_error(msg: str) -> None:
    print(f"{Colors.RED}Error:{Colors.RESET} {msg}", file=sys.stderr)


def print_success(msg: str) -> None:
    print(f"{Colors.GREEN}✓{Colors.RESET} {msg}")


def print_warning(msg: str) -> None:
    print(f"{Colors.YELLOW}Warning:{Colors.RESET} {msg}", file=sys.stderr)


def print_info(msg: str) -> None:
    print(f"{Colors.CYAN}ℹ{Colors.RESET} {msg}")


class SandboxCLI:
    """CLI handler for sandboxctl commands."""

    def __init__(self, config_path: Optional[str] = None,
                 store_dir: Optional[str] = None):
        self.config_path = config_path
        self.store_dir = store_dir
        self._config: Optional[EngineConfig] = None

    def _get_config(self) -> EngineConfig:
        if self._config is None:
            config = load_engine_config(self.config_path)
            if self.store_dir:
                config.policy_store_dir = self.store_dir
            self._config = config
        return self._config

    def _get_store(self) -> PolicyStore:
        config = self._get_config()
        return PolicyStore(config.policy_store_dir, config.signing_key_path)

    def cmd_run(self, args: argparse.Namespace) -> int:
        """Run a command in an ephemeral sandbox."""
        if not args.argv:
            print_error("No command specified. Use: sandboxctl run -- <command>")
            return 1

        # Imported here so `profiles`/`report` work without a runtime
        from ..engine import IsolationEngine

        try:
            config = self._get_config()
            engine = IsolationEngine(config)
        except IsolationError as e:
            print_error(str(e))
            return 1

        limits = config.default_resource_limits
        limit_changes = {}
        if args.cpu is not None:
            limit_changes['cpu'] = args.cpu
        if args.memory is not None:
            limit_changes['memory_mb'] = args.memory
        if args.timeout is not None:
            limit_changes['max_duration_sec'] = args.timeout
        if limit_changes:
            limits = dataclasses.replace(limits, **limit_changes)

        sandbox_config = SandboxConfig(
            name=f"sandboxctl-{args.task_id}",
            image=args.image or SandboxConfig().image,
            resource_limits=limits,
            security_policy=config.default_security_policy,
            cleanup_on_exit=not args.keep,
        )

        if not args.quiet:
            print_info(f"Running in sandbox with profile: {args.profile or 'none'}")
            print_info(f"Timeout: {limits.max_duration_sec}s")

        start_time = time.time()
        try:
            result = engine.execute_in_sandbox(
                args.task_id,
                args.argv,
                config=sandbox_config,
                profile_id=args.profile,
                attach_network=not args.no_network,
            )
        except IsolationError as e:
            print_error(str(e))
            return 1
        finally:
            if not args.keep:
                engine.shutdown()

        elapsed = time.time() - start_time
        if result.stdout:
            sys.stdout.write(result.stdout)
        if result.stderr:
            sys.stderr.write(result.stderr)

        if not args.quiet:
            if result.exit_code == 0:
                print_success(f"Command completed in {format_duration(elapsed)}")
            else:
                print_warning(f"Command exited with code {result.exit_code}")
            if args.keep:
                print_info(f"Sandbox kept: {result.sandbox_id}")
            errors = engine.get_error_summary()
            if errors['total_errors']:
                last = errors['last_error']
                print_warning(
                    f"{errors['total_errors']} cleanup/monitoring error(s); last: "
                    f"{last['operation']}: {last['error_message']}"
                )

        return result.exit_code

    def cmd_profiles(self, args: argparse.Namespace) -> int:
        """List security profiles."""
        try:
            config = self._get_config()
            manager = SecurityManager(store=self._get_store(),
                                      profile_files=config.profile_files)
        except IsolationError as e:
            print_error(str(e))
            return 1

        profiles = sorted(manager.list_profiles(), key=lambda p: (p.custom, p.id))

        if args.output == 'json':
            print(json.dumps([p.to_dict() for p in profiles], indent=2))
            return 0

        print(f"\n{Colors.BOLD}{'ID':<28} {'RISK':<10} {'SOURCE':<10} {'NAME'}{Colors.RESET}")
        print("-" * 72)
        for profile in profiles:
            risk = profile.risk_level.value
            color = getattr(Colors, RISK_COLORS.get(risk, 'RESET'))
            source = 'custom' if profile.custom else 'built-in'
            print(
                f"{profile.id:<28} "
                f"{color}{risk:<10}{Colors.RESET} "
                f"{source:<10} "
                f"{profile.name}"
            )
        print(f"\n{len(profiles)} profile(s) total")
        return 0

    def cmd_report(self, args: argparse.Namespace) -> int:
        """Export the persisted audit trail."""
        try:
            store = self._get_store()
        except IsolationError as e:
            print_error(str(e))
            return 1

        events = store.load_events()
        if args.sandbox:
            events = [e for e in events if e.sandbox_id == args.sandbox]
        if args.limit is not None:
            events = events[:args.limit]
        events.reverse()  # oldest first in reports

        if args.verify:
            records = store.load_event_records()
            signed = [r for r in records if r.get('signature')]
            invalid = [r for r in signed if not PolicyStore.verify_event(r)]
            if invalid:
                print_error(f"{len(invalid)} of {len(signed)} signed events failed verification")
                return 2
            print(f"{len(signed)} signed events verified", file=sys.stderr)

        try:
            output = render_audit(SecurityAudit.build(events), args.format)
        except IsolationError as e:
            print_error(str(e))
            return 1

        if args.output:
            with open(args.output, 'w') as f:
                f.write(output)
            print_success(f"Wrote {len(events)} events to {args.output}")
        else:
            sys.stdout.write(output)
            if not output.endswith('\n'):
                sys.stdout.write('\n')
        return 0

    def cmd_capabilities(self, args: argparse.Namespace) -> int:
        """Show runtime and packet filter detection."""
        try:
            config = self._get_config()
        except IsolationError as e:
            print_error(str(e))
            return 1

        capabilities = {
            'runtime': CliContainerRuntime(config.runtime_binary).get_capabilities(),
            'packet_filter': IptablesPacketFilter(use_sudo=config.use_sudo).get_capabilities(),
        }

        if args.output == 'json':
            print(json.dumps(capabilities, indent=2))
            return 0

        for section, values in capabilities.items():
            print(f"\n{Colors.BOLD}{section.replace('_', ' ').title()}:{Colors.RESET}")
            for key, value in values.items():
                if isinstance(value, bool):
                    color = Colors.GREEN if value else Colors.RED
                    value = f"{color}{'yes' if value else 'no'}{Colors.RESET}"
                print(f"  {key + ':':<16} {value}")
        return 0

    def cmd_validate_profile(self, args: argparse.Namespace) -> int:
        """Validate one or more YAML profile files."""
        failures = 0
        for path in args.files:
            try:
                profiles = load_profile_file(path)
            except IsolationError as e:
                print_error(f"{path}: {e}")
                failures += 1
                continue
            names = ', '.join(p.id for p in profiles)
            print_success(f"{path}: {len(profiles)} valid profile(s) ({names})")
        return 1 if failures else 0


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog='sandboxctl',
        description='Sandbox Isolation Engine CLI',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  sandboxctl run -- python3 script.py
  sandboxctl run --profile high-risk --memory 256 -- ./build.sh
  sandboxctl profiles
  sandboxctl report --format html --output audit.html
  sandboxctl capabilities
  sandboxctl validate-profile profiles.yaml
        """
    )

    parser.add_argument(
        '--no-color', action='store_true',
        help='Disable colored output'
    )
    parser.add_argument(
        '-v', '--verbose', action='store_true',
        help='Enable verbose logging'
    )
    parser.add_argument(
        '--log-file', metavar='PATH',
        help='Also write logs to this file'
    )
    parser.add_argument(
        '--log-json', action='store_true',
        help='Log one JSON object per line'
    )
    parser.add_argument(
        '--config', metavar='PATH',
        default=os.environ.get('ISOLATION_CONFIG_FILE'),
        help='Path to engine configuration file'
    )
    parser.add_argument(
        '--store-dir', metavar='PATH',
        help='Policy store directory (overrides configuration)'
    )

    subparsers = parser.add_subparsers(dest='cmd', help='Available commands')

    # run command
    run_parser = subparsers.add_parser('run', help='Run command in an ephemeral sandbox')
    run_parser.add_argument(
        '-p', '--profile',
        help='Security profile to bind (e.g. medium-risk)'
    )
    run_parser.add_argument(
        '--task-id', default=f"cli-{os.getpid()}",
        help='Task identifier used for the sandbox name'
    )
    run_parser.add_argument('--image', help='Container image')
    run_parser.add_argument(
        '-m', '--memory', type=int, metavar='MB',
        help='Memory limit in MB'
    )
    run_parser.add_argument(
        '-c', '--cpu', type=float, metavar='CORES',
        help='CPU limit in cores'
    )
    run_parser.add_argument(
        '-t', '--timeout', type=int, metavar='SECONDS',
        help='Hard timeout in seconds'
    )
    run_parser.add_argument(
        '--no-network', action='store_true',
        help='Do not attach an isolated network'
    )
    run_parser.add_argument(
        '--keep', action='store_true',
        help='Keep the sandbox after the command exits'
    )
    run_parser.add_argument(
        '-q', '--quiet', action='store_true',
        help='Suppress informational output'
    )
    run_parser.add_argument(
        'argv', nargs=argparse.REMAINDER,
        help='Command to run (after --)'
    )

    # profiles command
    profiles_parser = subparsers.add_parser('profiles', help='List security profiles')
    profiles_parser.add_argument(
        '-o', '--output', choices=['text', 'json'], default='text',
        help='Output format'
    )

    # report command
    report_parser = subparsers.add_parser('report', help='Export the audit trail')
    report_parser.add_argument(
        '-f', '--format', choices=sorted(RENDERERS), default='json',
        help='Report format'
    )
    report_parser.add_argument('--sandbox', help='Only events for this sandbox')
    report_parser.add_argument('--limit', type=int, help='Most recent N events')
    report_parser.add_argument('-o', '--output', metavar='FILE', help='Write to file')
    report_parser.add_argument(
        '--verify', action='store_true',
        help='Verify event signatures before exporting'
    )

    # capabilities command
    caps_parser = subparsers.add_parser('capabilities', help='Show runtime detection')
    caps_parser.add_argument(
        '-o', '--output', choices=['text', 'json'], default='text',
        help='Output format'
    )

    # validate-profile command
    validate_parser = subparsers.add_parser('validate-profile', help='Validate profile files')
    validate_parser.add_argument('files', nargs='+', help='YAML profile files')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.no_color or not sys.stdout.isatty():
        Colors.disable()

    # Quiet by default: only warnings and security events reach the console
    setup_logging(
        verbose=args.verbose,
        log_file=args.log_file,
        json_format=args.log_json,
        features=None if args.verbose else set(),
    )

    if not args.cmd:
        parser.print_help()
        return 0

    if args.cmd == 'run' and args.argv and args.argv[0] == '--':
        args.argv = args.argv[1:]

    cli = SandboxCLI(config_path=args.config, store_dir=args.store_dir)

    command_map = {
        'run': cli.cmd_run,
        'profiles': cli.cmd_profiles,
        'report': cli.cmd_report,
        'capabilities': cli.cmd_capabilities,
        'validate-profile': cli.cmd_validate_profile,
    }

    handler = command_map.get(args.cmd)
    if handler:
        return handler(args)
    else:
        print_error(f"Unknown command: {args.cmd}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
