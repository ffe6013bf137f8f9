#!/usr/bin/env python3
"""Group chat CLI: talk to a room of AI assistants."""

import argparse
import asyncio
import logging
import sys

from config.settings import Settings
from config.assistants import load_assistants
from schemas.chat import Persona
from schemas.events import ChatEvent, ChatEventKind
from agents.persona_optimizer import PersonaOptimizationError
from orchestrator import ChatOrchestrator, PersistenceError, RosterError, TurnOrchestrator

HELP_TEXT = """Commands:
  /agents                      List assistants in the chat
  /catalog                     List assistants that can be added
  /add <assistant-id>          Add an assistant from the catalog
  /remove <assistant-id>       Remove an assistant
  /memories <assistant-id>     Show an assistant's memories
  /remember <id> <text>        Add a memory by hand
  /forget <id> <memory-id>     Delete a memory
  /persona <id> <tone> | <expertise> | <instructions>
                               Change an assistant's persona
  /optimize <idea>             Turn a persona idea into instructions
  /reply <message-id> <text>   Reply to a specific message
  /quit                        Leave"""


def print_event(event: ChatEvent):
    """Render chat events on stdout."""
    if event.kind == ChatEventKind.MESSAGE_CONFIRMED and event.message:
        message = event.message
        reply = f" (re {message.reply_to_id})" if message.reply_to_id else ""
        if message.author and message.author.is_ai:
            print(f"\n[{message.id}] {message.author.name}{reply}: {message.text}")
    elif event.kind == ChatEventKind.TYPING_STARTED:
        print(f"  ... {event.participant_id} is typing")
    elif event.kind == ChatEventKind.MESSAGE_REMOVED and event.message:
        print(f"  ! message {event.message.id} could not be saved", file=sys.stderr)


async def handle_command(chat: TurnOrchestrator, orchestrator: ChatOrchestrator, line: str) -> bool:
    """
    Run one slash command.

    Returns:
        False when the user asked to quit
    """
    command, _, rest = line.partition(" ")
    rest = rest.strip()

    if command == "/quit":
        return False

    if command == "/agents":
        for agent in chat.agents:
            print(f"  {agent.id}: {agent.name} ({agent.persona.expertise})")
    elif command == "/catalog":
        present = {a.id for a in chat.agents}
        for assistant in load_assistants(orchestrator.settings.assistants_path):
            marker = "*" if assistant.id in present else " "
            print(f" {marker} {assistant.id}: {assistant.name} - {assistant.description}")
    elif command == "/add":
        catalog = {a.id: a for a in load_assistants(orchestrator.settings.assistants_path)}
        if rest not in catalog:
            print(f"Unknown assistant: {rest}")
        else:
            agent = await chat.add_agent(catalog[rest])
            print(f"{agent.name} joined the chat.")
    elif command == "/remove":
        await chat.remove_agent(rest)
        print(f"Removed {rest}.")
    elif command == "/memories":
        for item in chat.memory.get_bank(rest):
            print(f"  {item.id}: {item.content}")
    elif command == "/remember":
        agent_id, _, content = rest.partition(" ")
        item = await chat.add_memory(agent_id, content)
        print(f"Stored {item.id}.")
    elif command == "/forget":
        agent_id, _, memory_id = rest.partition(" ")
        await chat.delete_memory(agent_id, memory_id.strip())
        print(f"Forgot {memory_id.strip()}.")
    elif command == "/persona":
        agent_id, _, persona_text = rest.partition(" ")
        parts = [p.strip() for p in persona_text.split("|")]
        if len(parts) < 2:
            print("Usage: /persona <id> <tone> | <expertise> | <instructions>")
        else:
            persona = Persona(
                tone=parts[0],
                expertise=parts[1],
                additional_instructions=parts[2] if len(parts) > 2 else None
            )
            agent = await chat.update_persona(agent_id, persona)
            print(f"Updated {agent.name}: {agent.persona.describe()}")
    elif command == "/optimize":
        print(await orchestrator.optimize_persona(rest))
    elif command == "/reply":
        message_id, _, text = rest.partition(" ")
        await chat.send_message(text, reply_to_id=message_id)
    else:
        print(HELP_TEXT)

    return True


async def run(args: argparse.Namespace):
    settings_kwargs = {
        "selection_mode": args.mode,
        "verbose": args.verbose,
    }
    if args.db_path:
        settings_kwargs["db_path"] = args.db_path
    if args.provider:
        settings_kwargs["llm_provider"] = args.provider
    if args.model:
        settings_kwargs["llm_model"] = args.model
    settings = Settings(**settings_kwargs)

    orchestrator = ChatOrchestrator(settings=settings, listener=print_event)
    chat = await orchestrator.open_group(args.group)

    if args.assistants:
        catalog = {a.id: a for a in load_assistants(settings.assistants_path)}
        present = {a.id for a in chat.agents}
        for assistant_id in args.assistants:
            if assistant_id in catalog and assistant_id not in present:
                await chat.add_agent(catalog[assistant_id])

    print(f"Group: {chat.group.name} ({chat.group.id})")
    print("Assistants: " + (", ".join(a.name for a in chat.agents) or "none, use /add"))
    print("Type /help for commands.\n")

    try:
        while True:
            line = (await asyncio.to_thread(input, "> ")).strip()
            if not line:
                continue

            try:
                if line.startswith("/"):
                    if not await handle_command(chat, orchestrator, line):
                        break
                else:
                    await chat.send_message(line)
            except (PersistenceError, RosterError, PersonaOptimizationError, KeyError, ValueError) as e:
                print(f"Error: {e}", file=sys.stderr)
    except (EOFError, KeyboardInterrupt):
        pass
    finally:
        await orchestrator.close()


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Group chat with multiple AI assistants"
    )
    parser.add_argument(
        "--group",
        "-g",
        type=str,
        help="Chat group id to open (default: first group, created if needed)"
    )
    parser.add_argument(
        "--db-path",
        type=str,
        help="Path to the SQLite database (default: data/chat.db)"
    )
    parser.add_argument(
        "--provider",
        type=str,
        choices=["openai", "anthropic"],
        help="LLM provider"
    )
    parser.add_argument(
        "--model",
        type=str,
        help="Model name override"
    )
    parser.add_argument(
        "--assistants",
        "-a",
        nargs="*",
        default=[],
        help="Catalog assistant ids to add on start (e.g. ai-1 ai-2)"
    )
    parser.add_argument(
        "--mode",
        type=str,
        choices=["per_agent", "moderator"],
        default="per_agent",
        help="Responder selection mode (default: per_agent)"
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose output"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    try:
        asyncio.run(run(args))
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
