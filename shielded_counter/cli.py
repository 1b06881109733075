#!/usr/bin/env python3
"""
Shielded Counter CLI

Usage:
    shielded-counter <command> [subcommand] [options]

Commands:
    demo        Run initialize and increments against an in-memory ledger
    message     Print the authorization message an account signs
    config      Configuration management

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from enum import Enum
from typing import Any, Dict, List, Optional

import yaml

from shielded_counter import __version__
from shielded_counter.auth import AccountSigner, build_signing_message
from shielded_counter.config import ConfigError, get_config, get_config_manager
from shielded_counter.observability import configure_logging


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


class CounterCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="shielded-counter",
            description="Shielded counter transition engine",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"shielded-counter {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="YAML configuration file",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress non-essential output",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        demo = self.subparsers.add_parser("demo", help="Run a local counter scenario")
        demo.add_argument("--accounts", "-a", type=int, default=2, help="Number of accounts")
        demo.add_argument("--increments", "-n", type=int, default=3, help="Increments per account")

        message = self.subparsers.add_parser("message", help="Print an authorization message")
        message.add_argument("--action", required=True, choices=["initialize", "increment"])
        message.add_argument("--account", required=True, help="Account did:key")
        message.add_argument("--timestamp", required=True, help="ISO-8601 timestamp")

        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Dotted config path (e.g. tree.depth)")

        config_sub.add_parser("show", help="Show all configuration")
        config_sub.add_parser("validate", help="Validate configuration")
        config_sub.add_parser("schema", help="Export configuration schema")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            if parsed.config:
                get_config_manager().load_from_file(parsed.config)
            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return 0

        except (CLIError, ConfigError) as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return getattr(e, "exit_code", 2)

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}")

        return handler(args)

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        return {"path": args.path, "value": get_config_manager().get(args.path)}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return get_config().to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = get_config_manager().validate()
        if errors:
            raise CLIError("invalid configuration: " + "; ".join(errors))
        return {"valid": True, "errors": []}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        return get_config_manager().export_schema()

    def _handle_message(self, args: argparse.Namespace) -> Any:
        return build_signing_message(args.action, args.account, args.timestamp)

    def _handle_demo(self, args: argparse.Namespace) -> Any:
        if args.accounts < 1 or args.increments < 0:
            raise CLIError("--accounts must be >= 1 and --increments >= 0")
        cfg = get_config()
        if not args.quiet:
            configure_logging(
                cfg.observability.log_level.get(),
                cfg.observability.log_format.get(),
                stream=sys.stderr,
            )
        return asyncio.run(_run_demo(args.accounts, args.increments))


async def _run_demo(accounts: int, increments: int) -> Dict[str, Any]:
    from shielded_counter.orchestrator import build_local_orchestrator
    from shielded_counter.service import CounterService

    orchestrator = build_local_orchestrator()
    service = CounterService(orchestrator)
    signers = [AccountSigner() for _ in range(accounts)]
    report: Dict[str, Any] = {"accounts": []}

    try:
        for signer in signers:
            history = []
            for action in ["initialize"] + ["increment"] * increments:
                response = await service.execute(signer.authorize(action))
                if "error" in response:
                    raise CLIError(f"{action} failed for {signer.account_id}: {response['message']}")
                history.append({
                    "action": action,
                    "value": response["inputs"]["final_value"],
                    "tx_hash": response["protocol_adapter"]["submission"]["tx_hash"],
                })
            report["accounts"].append({
                "account": signer.account_id,
                "final_value": orchestrator.counter_value(signer.account_id),
                "transitions": history,
            })
    finally:
        orchestrator.close()

    ledger = orchestrator.ledger
    report["ledger"] = {
        "address": ledger.address,
        "chain_id": ledger.chain_id,
        "latest_root": ledger.latest_root(),
        "executed": ledger.executed_count,
    }
    report["audit_chain_valid"] = orchestrator.audit.verify_chain()
    return report


def main() -> int:
    """CLI entry point."""
    cli = CounterCLI()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
