import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import List

from buddyscript.buddy_config import ScriptConfig
from buddyscript.buddy_printer import stringify
from buddyscript.buddy_registry import ScriptRegistry, create_script_template, get_script_extension
from buddyscript.buddy_runtime import ScriptRunner, execute_script_file, validate_script

COMMANDS = ("run", "validate", "new", "templates")
VALUE_OPTIONS = {"--timeout", "--workdir", "--config", "--var"}


# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)


def print_result(result, source=None) -> int:
    for line in result.output:
        print(line)
    if not result.success:
        print(result.format_error(source), file=sys.stderr)
        return 1
    if result.return_value is not None:
        print(stringify(result.return_value))
    return 0


def build_config(args) -> ScriptConfig:
    config = ScriptConfig.from_file(args.config) if args.config else ScriptConfig()
    variables = dict(config.variables)
    for item in args.var or []:
        name, _, value = item.partition("=")
        variables[name] = value
    return config.merged(
        dry_run=True if args.dry_run else None,
        timeout=args.timeout,
        enable_file_ops=False if args.no_file_ops else None,
        enable_bash=False if args.no_bash else None,
        enable_ai=False if args.no_ai else None,
        verbose=True if args.verbose else None,
        variables=variables,
    )


async def run_script_file(args) -> int:
    """Run a script file non-interactively and return the exit status."""
    path = Path(args.file).resolve()
    # The script's own directory is the workdir unless --workdir is given.
    config = build_config(args).merged(workdir=args.workdir or str(path.parent))
    result = await execute_script_file(path, config)
    source = None
    if result.error_line is not None:
        try:
            source = Path(args.file).read_text(encoding="utf-8")
        except OSError:
            source = None
    return print_result(result, source)


def validate_file(path: str) -> int:
    try:
        source = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {path}", file=sys.stderr)
        return 1
    result = validate_script(source)
    if result.valid:
        print(f"{path}: OK")
        return 0
    for error in result.errors:
        print(f"{path}: {error}", file=sys.stderr)
    return 1


def new_script(name: str, description: str, output: str = None) -> int:
    target = Path(output or f"{name}{get_script_extension()}")
    if target.exists():
        print(f"Error: {target} already exists", file=sys.stderr)
        return 1
    target.write_text(create_script_template(name, description or ""), encoding="utf-8")
    print(f"Created {target}")
    return 0


def list_templates(directory: str = None, search: str = None) -> int:
    registry = ScriptRegistry(directory)
    registry.load_templates()
    if search:
        for template in registry.search_templates(search):
            print(f"{template.name} [{template.category}] - {template.description}")
        return 0
    print(registry.format_template_list())
    return 0


async def repl(args) -> int:
    print("Buddy Script REPL v0.1")
    print("Type 'exit' or press Ctrl+D to quit.")

    runner = ScriptRunner(build_config(args))

    while True:
        try:
            raw = await ainput(">> ")
            if raw == "":
                raise EOFError
            line = raw.strip()

            if not line:
                continue
            if line == "exit":
                break

            result = await runner.execute(line)
            print_result(result, line)

        except EOFError:
            print("\nExiting.")
            break
    return 0


def add_run_options(p: argparse.ArgumentParser, inherit: bool = False):
    """Adds the execution options. With ``inherit``, unset options keep the values parsed before the subcommand."""
    def default(value):
        return argparse.SUPPRESS if inherit else value

    p.add_argument("--dry-run", action="store_true", default=default(False),
                   help="report file, shell and AI actions instead of performing them")
    p.add_argument("--timeout", type=int, default=default(None), help="execution timeout in milliseconds")
    p.add_argument("--workdir", default=default(None), help="directory relative paths resolve against")
    p.add_argument("--config", default=default(None), help="YAML or JSON file with script options")
    p.add_argument("--var", action="append", default=default(None), metavar="NAME=VALUE",
                   help="predefine a global string variable")
    p.add_argument("--no-file-ops", action="store_true", default=default(False))
    p.add_argument("--no-bash", action="store_true", default=default(False))
    p.add_argument("--no-ai", action="store_true", default=default(False))
    p.add_argument("-v", "--verbose", action="store_true", default=default(False),
                   help="run test blocks and log debug output")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="buddy-script", description="Run Buddy Script files.")
    add_run_options(parser)
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="execute a script file")
    run.add_argument("file")
    add_run_options(run, inherit=True)

    validate = sub.add_parser("validate", help="check a script for syntax errors")
    validate.add_argument("file")

    new = sub.add_parser("new", help="write a new script from the template")
    new.add_argument("name")
    new.add_argument("-d", "--description", default="")
    new.add_argument("-o", "--output", default=None)

    templates = sub.add_parser("templates", help="list script templates")
    templates.add_argument("directory", nargs="?", default=None)
    templates.add_argument("--search", default=None)
    return parser


def configure_logging(verbose: bool):
    if verbose or os.environ.get("BUDDY_SCRIPT_DEBUG"):
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")


async def main(args) -> int:
    match args.command:
        case "run":
            return await run_script_file(args)
        case "validate":
            return validate_file(args.file)
        case "new":
            return new_script(args.name, args.description, args.output)
        case "templates":
            return list_templates(args.directory, args.search)
        case _:
            return await repl(args)


def with_default_command(argv: List[str]) -> List[str]:
    """Inserts ``run`` before the first positional argument when it is not a subcommand."""
    i = 0
    while i < len(argv):
        arg = argv[i]
        if arg in VALUE_OPTIONS:
            i += 2
        elif arg.startswith("-"):
            i += 1
        elif arg in COMMANDS:
            break
        else:
            return [*argv[:i], "run", *argv[i:]]
    return argv


def cli(argv=None) -> int:
    """Entry point: ``buddy-script [command] ...``; a bare file name means ``run``."""
    argv = list(sys.argv[1:] if argv is None else argv)
    args = build_parser().parse_args(with_default_command(argv))
    configure_logging(getattr(args, "verbose", False))
    try:
        return asyncio.run(main(args))
    except KeyboardInterrupt:
        print("\nExiting.")
        return 130


if __name__ == "__main__":
    sys.exit(cli())
