"""Command-line interface for Spexus."""

import argparse
import asyncio
import errno
import json
import logging
import os
import sys
from typing import Any, Iterable, List, Optional, Sequence

from . import __version__ as PACKAGE_VERSION
from .errors import ServiceError
from .mcp import MCPServer
from .service import ROLES, RequirementsService

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

MCP_USER_ENV = "SPEXUS_MCP_USER"


class CLI:
    """Command-line interface for running and administering Spexus."""

    def __init__(
        self, config_path: Optional[str] = None, db_path: Optional[str] = None
    ):
        """Initialize the CLI.

        Args:
            config_path: Path to the configuration file
            db_path: Path to the SQLite database
        """
        self.config_path = config_path
        self.db_path = db_path
        self.service = RequirementsService(config_path=config_path, db_path=db_path)

    def parse_args(self, args: List[str]) -> argparse.Namespace:
        """Parse command line arguments.

        Args:
            args: Command line arguments

        Returns:
            Parsed arguments
        """
        parser = self._build_parser()
        return parser.parse_args(args)

    def _build_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            description="Spexus - requirements management over MCP"
        )
        parser.add_argument(
            "--version", action="version", version=f"spexus {PACKAGE_VERSION}"
        )
        subparsers = parser.add_subparsers(dest="command", help="Command to run")
        self._register_serve_command(subparsers)
        self._register_mcp_commands(subparsers)
        self._register_user_commands(subparsers)
        self._register_prompt_commands(subparsers)
        self._register_config_commands(subparsers)
        return parser

    def _register_serve_command(self, subparsers) -> None:
        api_config = self.service.config.get("api")
        serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
        serve_parser.add_argument(
            "--host", default=api_config.get("host", "127.0.0.1"), help="Bind host"
        )
        serve_parser.add_argument(
            "--port", type=int, default=api_config.get("port", 8080), help="Bind port"
        )
        serve_parser.add_argument(
            "--debug",
            action="store_true",
            default=bool(api_config.get("debug", False)),
            help="Enable the Flask debugger",
        )

    def _register_mcp_commands(self, subparsers) -> None:
        mcp_config = self.service.config.get("mcp")
        mcp_parser = subparsers.add_parser("mcp", help="Model Context Protocol server")
        mcp_subparsers = mcp_parser.add_subparsers(dest="mcp_command")

        mcp_serve = mcp_subparsers.add_parser(
            "serve", help="Start an MCP server endpoint"
        )
        mcp_serve.add_argument(
            "--host", default=mcp_config.get("host", "127.0.0.1"), help="Bind host"
        )
        mcp_serve.add_argument(
            "--port", type=int, default=mcp_config.get("port", 8765), help="Bind port"
        )
        mcp_serve.add_argument(
            "--user",
            help=f"Username the session acts as (defaults to {MCP_USER_ENV})",
        )
        mcp_serve.add_argument(
            "--log-level",
            default="INFO",
            help="Log level for the MCP server (e.g., DEBUG, INFO)",
        )
        mcp_serve.add_argument(
            "--stdio",
            action="store_true",
            help="Serve the MCP protocol over standard input/output instead of TCP",
        )

    def _register_user_commands(self, subparsers) -> None:
        user_parser = subparsers.add_parser("user", help="User management")
        user_subparsers = user_parser.add_subparsers(dest="user_command")

        user_subparsers.add_parser("list", help="List users")

        user_add = user_subparsers.add_parser("add", help="Add a user")
        user_add.add_argument("username", help="Username")
        user_add.add_argument("--email", help="Contact email address")
        user_add.add_argument(
            "--role", default="user", choices=ROLES, help="Role (default: user)"
        )

    def _register_prompt_commands(self, subparsers) -> None:
        prompt_parser = subparsers.add_parser("prompt", help="System prompt management")
        prompt_subparsers = prompt_parser.add_subparsers(dest="prompt_command")

        prompt_subparsers.add_parser("list", help="List prompts")

        prompt_add = prompt_subparsers.add_parser("add", help="Add a prompt")
        prompt_add.add_argument("name", help="Unique prompt name")
        prompt_add.add_argument("title", help="Prompt title")
        source = prompt_add.add_mutually_exclusive_group(required=True)
        source.add_argument("--content", help="Prompt text")
        source.add_argument("--file", help="Read the prompt text from a file")
        prompt_add.add_argument("--description", help="Short description")
        prompt_add.add_argument(
            "--role", default="assistant", choices=("user", "assistant")
        )
        prompt_add.add_argument(
            "--user",
            help=f"Username recorded as creator (defaults to {MCP_USER_ENV})",
        )
        prompt_add.add_argument(
            "--activate", action="store_true", help="Activate the prompt right away"
        )

        prompt_activate = prompt_subparsers.add_parser(
            "activate", help="Make a prompt the active system prompt"
        )
        prompt_activate.add_argument("name", help="Prompt name or id")

    def _register_config_commands(self, subparsers) -> None:
        config_parser = subparsers.add_parser("config", help="Configuration management")
        config_subparsers = config_parser.add_subparsers(dest="config_command")

        show_parser = config_subparsers.add_parser(
            "show", help="Show configuration values"
        )
        show_parser.add_argument(
            "section", nargs="?", help="Configuration section to display"
        )
        show_parser.add_argument(
            "key", nargs="?", help="Specific key within the section"
        )
        show_parser.add_argument(
            "--json", action="store_true", help="Output configuration in JSON format"
        )

        set_parser = config_subparsers.add_parser(
            "set", help="Update a configuration value"
        )
        set_parser.add_argument("section", help="Configuration section")
        set_parser.add_argument("key", help="Configuration key")
        set_parser.add_argument("value", help="New value (use JSON for complex types)")

        config_subparsers.add_parser("path", help="Show configuration file path")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI with the given arguments.

        Args:
            args: Command line arguments, defaults to sys.argv[1:]

        Returns:
            Exit code
        """
        if args is None:
            args = sys.argv[1:]

        try:
            parsed_args = self.parse_args(args)
        except SystemExit:
            return 1

        if not parsed_args.command:
            print("Error: No command specified")
            return 1

        handler_map = {
            "serve": self._serve,
            "mcp": self._handle_mcp_command,
            "user": self._handle_user_command,
            "prompt": self._handle_prompt_command,
            "config": self._handle_config_command,
        }

        handler = handler_map.get(parsed_args.command)
        if handler is None:
            print(f"Error: Unknown command {parsed_args.command}")
            return 1

        try:
            return handler(parsed_args)
        except ServiceError as exc:
            print(f"Error: {exc.message}")
            return 1

    def _serve(self, args: argparse.Namespace) -> int:
        from .api import create_app  # pylint: disable=import-outside-toplevel

        app = create_app(service=self.service)
        print(f"Starting HTTP API on {args.host}:{args.port}")
        app.run(host=args.host, port=args.port, debug=args.debug)
        return 0

    def _handle_mcp_command(self, args: argparse.Namespace) -> int:
        handler_map = {"serve": self._mcp_serve}
        handler = handler_map.get(args.mcp_command)
        if handler is None:
            print(f"Error: Unknown MCP command {args.mcp_command}")
            return 1
        return handler(args)

    def _session_user(self, username: Optional[str]) -> Optional[dict]:
        name = username or os.getenv(MCP_USER_ENV)
        if not name:
            return None
        return self.service.get_user_by_username(name)

    def _mcp_serve(self, args: argparse.Namespace) -> int:
        try:
            log_level = self._resolve_log_level(getattr(args, "log_level", "INFO"))
        except ValueError as exc:
            print(f"Error: {exc}")
            return 1

        root_logger = logging.getLogger()
        root_logger.setLevel(log_level)
        for handler in root_logger.handlers:
            handler.setLevel(log_level)
        logging.getLogger("spexus").setLevel(log_level)

        logger.info(
            "Launching MCP server version %s with log level %s",
            PACKAGE_VERSION,
            logging.getLevelName(log_level),
        )

        user = self._session_user(args.user)
        if user is None:
            logger.warning(
                "No session user configured; tools that change data will be refused"
            )
        server = MCPServer(self.service, user=user)
        host = args.host
        port = args.port
        user_label = user["username"] if user else "anonymous"

        if args.stdio:
            # stdout carries the protocol
            print(f"Starting MCP server on stdio (user={user_label})", file=sys.stderr)
        else:
            print(f"Starting MCP server on {host}:{port} (user={user_label})")

        async def runner() -> None:
            try:
                if args.stdio:
                    await server.serve_stdio()
                else:
                    await server.serve_tcp(host=host, port=port)
            except OSError as exc:  # pragma: no cover - depends on environment
                if not args.stdio and exc.errno == errno.EADDRINUSE:
                    print(f"Error: MCP server port {host}:{port} is already in use.")
                    return
                raise

        try:
            asyncio.run(runner())
        except KeyboardInterrupt:
            print("MCP server stopped", file=sys.stderr)
        return 0

    def _handle_user_command(self, args: argparse.Namespace) -> int:
        """Handle user management commands."""
        command = getattr(args, "user_command", None)
        handler_map = {
            "list": self._user_list,
            "add": self._user_add,
        }
        handler = handler_map.get(command)
        if handler is None:
            print(f"Error: Unknown user command {command}")
            return 1
        return handler(args)

    def _user_list(self, _args: argparse.Namespace) -> int:
        users = self.service.list_users()
        if not users:
            print("No users found")
            return 0

        headers = ("ID", "Username", "Role", "Created")
        rows = [
            (
                user.get("id", ""),
                user.get("username", ""),
                user.get("role", "user"),
                user.get("created_at", ""),
            )
            for user in users
        ]
        self._print_table(headers, rows, title="Users")
        return 0

    def _user_add(self, args: argparse.Namespace) -> int:
        user, token = self.service.create_user(
            args.username, email=args.email, role=args.role
        )
        print(f"User '{user['username']}' created with id {user['id']}")
        print(f"API token (shown once): {token}")
        return 0

    def _handle_prompt_command(self, args: argparse.Namespace) -> int:
        command = getattr(args, "prompt_command", None)
        handler_map = {
            "list": self._prompt_list,
            "add": self._prompt_add,
            "activate": self._prompt_activate,
        }
        handler = handler_map.get(command)
        if handler is None:
            print(f"Error: Unknown prompt command {command}")
            return 1
        return handler(args)

    def _prompt_list(self, _args: argparse.Namespace) -> int:
        prompts = self.service.list_prompts()
        if not prompts:
            print("No prompts found")
            return 0

        rows = [
            (
                "*" if prompt["is_active"] else "",
                prompt["name"],
                prompt["title"],
                prompt.get("role", "assistant"),
            )
            for prompt in prompts
        ]
        self._print_table(("Active", "Name", "Title", "Role"), rows, title="Prompts")
        return 0

    def _prompt_add(self, args: argparse.Namespace) -> int:
        creator = self._session_user(args.user)
        if creator is None:
            print(f"Error: Pass --user or set {MCP_USER_ENV} to record the creator")
            return 1

        content = args.content
        if args.file:
            try:
                with open(args.file, "r", encoding="utf-8") as handle:
                    content = handle.read()
            except OSError as exc:
                print(f"Error: Cannot read {args.file}: {exc}")
                return 1

        prompt = self.service.create_prompt(
            creator["id"],
            args.name,
            args.title,
            content,
            description=args.description,
            role=args.role,
        )
        print(f"Prompt '{prompt['name']}' created")
        if args.activate:
            self.service.activate_prompt(prompt["id"])
            print(f"Prompt '{prompt['name']}' is now active")
        return 0

    def _prompt_activate(self, args: argparse.Namespace) -> int:
        prompt = self.service.activate_prompt(args.name)
        print(f"Prompt '{prompt['name']}' is now active")
        return 0

    def _handle_config_command(self, args: argparse.Namespace) -> int:
        """Handle configuration commands."""
        command = getattr(args, "config_command", None)
        handler_map = {
            "show": self._config_show,
            "set": self._config_set,
            "path": self._config_path,
        }
        handler = handler_map.get(command)
        if handler is None:
            print(f"Error: Unknown config command {command}")
            return 1
        return handler(args)

    def _config_show(self, args: argparse.Namespace) -> int:
        config = self.service.config
        section = getattr(args, "section", None)
        key = getattr(args, "key", None)
        data: Any

        if section is None:
            data = config.config
        else:
            section_data = config.get(section)
            if section_data is None:
                print(f"Error: Configuration section '{section}' not found")
                return 1
            if key is None:
                data = section_data
            else:
                value = config.get(section, key)
                if value is None:
                    print(f"Error: Key '{key}' not found in section '{section}'")
                    return 1
                data = value

        self._print_config_data(data, args.json)
        return 0

    def _config_set(self, args: argparse.Namespace) -> int:
        config = self.service.config
        value = self._parse_config_value(args.value)
        config.set(args.section, args.key, value)
        if config.save():
            print(f"Updated {args.section}.{args.key} = {value}")
            return 0
        print("Error: Failed to save configuration")
        return 1

    def _config_path(self, _args: argparse.Namespace) -> int:
        print(self.service.config.config_path)
        return 0

    @staticmethod
    def _print_config_data(data: Any, as_json: bool):
        if as_json or isinstance(data, (dict, list)):
            print(json.dumps(data, indent=2, sort_keys=True, default=str))
        else:
            print(data)

    @staticmethod
    def _parse_config_value(raw: str) -> Any:
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            pass

        lowered = raw.lower()
        literal_map = {"true": True, "false": False, "null": None}
        if lowered in literal_map:
            return literal_map[lowered]
        return raw

    @staticmethod
    def _print_table(
        headers: Sequence[str],
        rows: Iterable[Sequence[Any]],
        *,
        title: Optional[str] = None,
    ) -> None:
        rendered_rows = [
            tuple("" if cell is None else str(cell) for cell in row) for row in rows
        ]
        widths = [len(str(header)) for header in headers]
        for row in rendered_rows:
            for index, cell in enumerate(row):
                widths[index] = max(widths[index], len(cell))

        horizontal = "+" + "+".join("-" * (width + 2) for width in widths) + "+"
        header_sep = "+" + "+".join("=" * (width + 2) for width in widths) + "+"

        def format_row(row_values: Sequence[str]) -> str:
            cells = [f" {value.ljust(widths[idx])} " for idx, value in enumerate(row_values)]
            return "|" + "|".join(cells) + "|"

        if title:
            print(title)
        print(horizontal)
        print(format_row(tuple(str(header) for header in headers)))
        print(header_sep)
        for row in rendered_rows:
            print(format_row(row))
        print(horizontal)

    @staticmethod
    def _resolve_log_level(value: str) -> int:
        if not value:
            raise ValueError("Log level cannot be empty")

        normalized = value.upper()
        if normalized == "WARN":
            normalized = "WARNING"

        level = logging.getLevelName(normalized)
        if isinstance(level, str):  # logging returns level name when unknown
            raise ValueError(
                "Invalid log level. Choose from CRITICAL, ERROR, WARNING, INFO, DEBUG, or NOTSET."
            )

        return level


def main() -> int:
    """Entry point for the CLI."""
    cli = CLI()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
