import asyncio
import sys
from pathlib import Path

from fpasync.fpasync_config import Settings
from fpasync.fpasync_driver import AsyncEvaluator, load_resource
from fpasync.fpasync_outcome import OperationOutcomeError
from fpasync.fpasync_serialize import serialize

USAGE = "usage: fpasync.py <resource.json|resource.yaml|-> [expression]"


# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)


def read_resource(locator: str):
    """Load the resource to evaluate against; '-' reads stdin."""
    if locator == "-":
        text = sys.stdin.read()
    else:
        try:
            text = Path(locator).read_text(encoding="utf-8")
        except FileNotFoundError:
            print(f"Error: file not found: {locator}", file=sys.stderr)
            raise SystemExit(1)
    try:
        return load_resource(text)
    except OperationOutcomeError as e:
        print(e.format(), file=sys.stderr)
        raise SystemExit(1)


async def run_expression(driver: AsyncEvaluator, resource, expression: str, model=None) -> bool:
    """Evaluate once and print the result list as JSON; False on error."""
    result = await driver.run(resource, expression, model=model)
    if result.status == 'success' or result.error is None:
        for issue in result.issues:
            print(f"{issue.severity}: {issue.diagnostics}", file=sys.stderr)
        print(serialize(result.value, fmt="json"))
        return True
    print(result.format_error(), file=sys.stderr)
    return False


async def main(argv=None):
    """Evaluate one expression when given, otherwise start the interactive REPL."""
    args = list(sys.argv[1:] if argv is None else argv)
    if not args or args[0] in ("-h", "--help"):
        print(USAGE)
        return

    settings = Settings.from_env()
    driver = AsyncEvaluator.from_settings(settings)
    resource = read_resource(args[0])

    if len(args) > 1:
        ok = await run_expression(driver, resource, " ".join(args[1:]), settings.model)
        if not ok:
            raise SystemExit(1)
        return

    print("fpasync REPL v0.1")
    print("Type 'exit' or press Ctrl+D to quit.")

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

            await run_expression(driver, resource, line, settings.model)

        except EOFError:
            print("\nExiting.")
            break


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")
