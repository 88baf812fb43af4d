"""
Console Test Harness for SessionController

Simple console loop to exercise a full reporting session without Flask.
The console user is treated as already verified (identity from --email).

Commands:
    :pick <n>             choose suggestion n
    :attach <path> <text> send text with a local file attached
    :dismiss              close the suggestion choice
    :edit <section> <json> replace a section (form edit)
    :missing              list unfilled mandatory fields
    :reset                start over
    quit / exit / stop    leave
"""

import argparse
import asyncio
import json
import logging
import sys

from aers.contracts import Identity
from aers.commands import View
from aers.core.identity import InMemoryIdentityProvider
from aers.core.report_agent import ReportAgent
from aers.core.report_formatter import ReportFormatter
from aers.core.session_controller import SessionController
from aers.errors import AttachmentReadError
from aers.persistence import PendingActionStore
from aers.results import IllegalCommand
from aers.settings import settings
from aers.utils.attachments import read_attachments
from aers.utils.hf_client import HuggingFaceClient
from aers.utils.term_lookup import TermLookupClient

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

EXIT_COMMANDS = {"quit", "exit", "stop"}


def print_separator(char="=", length=60):
    print(char * length)


def print_result(result):
    """Print agent output, suggestions and progress"""
    if isinstance(result, IllegalCommand):
        print(f"\n[Not allowed: {result.reason}]\n")
        return

    if result.error:
        print(f"\n[Error: {result.error}]")
    if result.system_output:
        print(f"\nAgent: {result.system_output}")
    for i, term in enumerate(result.suggestions, start=1):
        print(f"  {i}. {term}")
    print(f"\n[{result.state.view.value} | {result.completion}% complete]\n")


async def handle_command(controller, line):
    """Run one ':' command; returns a result or None"""
    parts = line[1:].split(maxsplit=2)
    command = parts[0] if parts else ''

    if command == 'pick' and len(parts) == 2 and parts[1].isdigit():
        candidates = controller.state.suggestions.candidates if controller.state.suggestions else ()
        index = int(parts[1]) - 1
        if not 0 <= index < len(candidates):
            print("No such suggestion.\n")
            return None
        return await controller.confirm_suggestion(candidates[index])

    if command == 'attach' and len(parts) >= 2:
        try:
            payloads = read_attachments([parts[1]])
        except AttachmentReadError as e:
            print(f"Attachment error: {e}\n")
            return None
        text = parts[2] if len(parts) == 3 else ''
        if controller.state.view == View.LANDING:
            return await controller.start_report(text, payloads)
        return await controller.send_message(text, payloads)

    if command == 'dismiss':
        return controller.dismiss_suggestions()

    if command == 'edit' and len(parts) == 3:
        try:
            value = json.loads(parts[2])
        except json.JSONDecodeError as e:
            print(f"Invalid JSON: {e}\n")
            return None
        return controller.edit_section(parts[1], value)

    if command == 'missing':
        for path in controller.session_view()['missing_fields']:
            print(f"  - {path}")
        print()
        return None

    if command == 'reset':
        return controller.reset()

    print(f"Unknown command: {line}\n")
    return None


async def run_session(controller):
    print("Describe the side effect you experienced to begin.\n")

    while True:
        line = input("> ").strip()
        if not line:
            continue
        if line.lower() in EXIT_COMMANDS:
            return

        if line.startswith(':'):
            result = await handle_command(controller, line)
        elif controller.state.view == View.LANDING:
            result = await controller.start_report(line)
        else:
            result = await controller.send_message(line)

        if result is None:
            continue
        print_result(result)

        if controller.state.view == View.REVIEW:
            print_separator()
            print("REPORT COMPLETE")
            print_separator()
            final = controller.export()
            print(f"\nSaved to: {final.path}")
            print(f"Download name: {final.filename}")
            print(f"Report ID: {final.report_id}")
            return


def main():
    """Run console session"""
    parser = argparse.ArgumentParser(description="AERS Reporting Agent console")
    parser.add_argument('--email', default='reporter@example.com')
    parser.add_argument('--first-name', default=None)
    parser.add_argument('--last-name', default=None)
    parser.add_argument('--country', default=None)
    args = parser.parse_args()

    print_separator()
    print("AERS REPORTING AGENT - CONSOLE")
    print_separator()
    print("\nInitializing modules (this may take a while)...")

    try:
        hf_client = HuggingFaceClient(
            model_name=settings.MODEL_NAME,
            load_in_4bit=settings.LOAD_IN_4BIT,
            device=settings.DEVICE
        )
        agent = ReportAgent(
            llm_client=hf_client,
            term_lookup=TermLookupClient(settings.TERM_LOOKUP_URL),
            max_new_tokens=settings.MAX_NEW_TOKENS
        )
    except Exception as e:
        print(f"\nFailed to initialize: {e}")
        import traceback
        traceback.print_exc()
        return 1

    profile = {
        key: value for key, value in (
            ('first_name', args.first_name),
            ('last_name', args.last_name),
            ('country', args.country),
        ) if value
    }
    identity_provider = InMemoryIdentityProvider(
        identity=Identity(user_id='console', email=args.email, profile=profile)
    )

    controller = SessionController(
        collaborator=agent,
        identity_provider=identity_provider,
        pending_store=PendingActionStore(settings.PENDING_DIR),
        report_formatter=ReportFormatter(),
        output_dir=settings.OUTPUT_DIR
    )

    print("\nModules initialized successfully!")
    print_separator()

    try:
        asyncio.run(run_session(controller))
    except (KeyboardInterrupt, EOFError):
        print("\n\nSession interrupted by user")

    print_separator()
    print("Console session complete")
    print_separator()
    return 0


if __name__ == '__main__':
    sys.exit(main())
