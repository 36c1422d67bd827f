# chatkeep/main.py
"""
chatkeep CLI entrypoint.

Text in -> ConversationController -> text out, with the session persisted in
the configured SQLite file between runs.

Commands (typed at the prompt):
- /new              : start a new conversation
- /list             : list conversations, most recent first
- /switch <n>       : make the n-th listed conversation active
- /delete           : delete the active conversation
- /transcript       : print the active conversation
- /image <prompt>   : generate an image (counts against the daily quota)
- /images           : list recent image ids
- /quota            : show today's image quota
- exit | quit       : leave
"""

from __future__ import annotations

import argparse
import asyncio
from typing import Optional

from chatkeep.clients.backend_client import BackendClient
from chatkeep.config.settings import load_settings
from chatkeep.core.chat import ConversationController
from chatkeep.core.session import build_session
from chatkeep.core.summarizer import MemorySummarizer
from chatkeep.memory.errors import CollaboratorFailure


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="chatkeep text chat with durable multi-conversation history.")
    p.add_argument("--session", default="default", help="Session id; each id has its own history and quota.")
    p.add_argument("--api-base", default=None, help="Override CHATKEEP_API_BASE for this run.")
    p.add_argument("--no-greet", action="store_true", help="Skip the opening greeting on empty conversations.")
    return p


def _print_list(controller: ConversationController) -> None:
    for idx, conv in enumerate(controller.list_conversations(), start=1):
        marker = "*" if conv.id == controller.active_id else " "
        print(f"{marker} {idx:>2}. {conv.title}  ({len(conv.messages)} messages, updated {conv.updated_at})")


async def _handle_command(controller: ConversationController, line: str) -> None:
    cmd, _, arg = line.partition(" ")
    arg = arg.strip()

    if cmd == "/new":
        conv = controller.new_conversation()
        print(f"[new conversation {conv.id}]")
    elif cmd == "/list":
        _print_list(controller)
    elif cmd == "/switch":
        ordered = controller.list_conversations()
        try:
            conv = controller.select(ordered[int(arg) - 1].id)
        except (ValueError, IndexError):
            print("[usage] /switch <number from /list>")
            return
        print(f"[active: {conv.title}]")
    elif cmd == "/delete":
        active = controller.ensure_active()
        controller.delete(active.id)
        print(f"[deleted: {active.title}]")
    elif cmd == "/transcript":
        print(controller.transcript(controller.ensure_active().id) or "[empty]")
    elif cmd == "/image":
        if not arg:
            print("[usage] /image <prompt>")
            return
        result = (await controller.request_image(arg)).image
        if result.ok:
            print(f"[image ready: {len(result.url or '')} chars of data URI]")
        else:
            print(f"[image] {result.error}")
    elif cmd == "/images":
        for asset in await controller.session.media.get_all():
            print(f"  {asset.created_at}  {asset.id}")
    elif cmd == "/quota":
        record = controller.session.quota.current()
        print(f"[quota] {record.count}/{controller.session.quota.limit} used on {record.date}")
    else:
        print(f"[unknown command {cmd}]")


async def run(args: argparse.Namespace) -> None:
    settings = load_settings()
    if args.api_base:
        settings.api_base = args.api_base.rstrip("/")

    client = BackendClient(settings)
    controller = ConversationController(
        build_session(args.session, settings),
        client,
        summarizer=MemorySummarizer.from_settings(client, settings),
    )
    print("chatkeep (text). Type 'exit' to quit, /list for conversations.\n")

    try:
        if not args.no_greet:
            greeting = await controller.greet()
            if greeting:
                print(f"Assistant: {greeting}\n")

        while True:
            try:
                user = (await asyncio.to_thread(input, "You: ")).strip()
            except (EOFError, KeyboardInterrupt):
                print("\n[Session ended]")
                break

            if not user:
                continue
            if user.lower() in {"exit", "quit"}:
                print("[Session ended]")
                break
            if user.startswith("/"):
                await _handle_command(controller, user)
                continue

            try:
                turn = await controller.send(user)
            except CollaboratorFailure as e:
                print(f"Assistant (error): {e}")
                continue

            if turn.image is not None:
                print(f"Assistant: [image] {'ready' if turn.image.ok else turn.image.error}\n")
            else:
                print(f"Assistant: {turn.reply}\n")
    finally:
        await controller.drain()
        controller.close()


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
