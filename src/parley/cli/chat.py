"""
Interactive chat REPL.

Reads lines from stdin and sends each to the coordinator as one turn for
the given user. A few slash commands manage the session:

- /clear  forget the conversation (the system prompt is kept)
- /stats  show message count and estimated context size
- /quit   flush pending saves and exit

Backend settings come from the environment (see parley.config).
"""

import json
import logging
import sys
from typing import TextIO

from parley.coordinator import Coordinator

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
PROMPT = "you> "


class ChatSession:
    """Line-oriented front end over one user's conversation."""

    def __init__(self, coordinator: Coordinator, user_id: str):
        self.coordinator = coordinator
        self.user_id = user_id
        self.running = True

    def handle_line(self, line: str) -> str | None:
        """
        Process one input line.

        Returns:
            Text to show the user, or None for a blank line
        """
        text = line.strip()
        if not text:
            return None

        if text == "/quit":
            self.running = False
            return "bye."
        if text == "/clear":
            self.coordinator.clear(self.user_id)
            return "conversation cleared."
        if text == "/stats":
            stats = self.coordinator.stats(self.user_id)
            return json.dumps(stats.to_dict(), indent=2)
        if text.startswith("/"):
            return f"unknown command: {text}. try /clear, /stats or /quit"

        return self.coordinator.chat(self.user_id, text)

    def run(self, stdin: TextIO = sys.stdin, stdout: TextIO = sys.stdout) -> None:
        while self.running:
            stdout.write(PROMPT)
            stdout.flush()
            line = stdin.readline()
            if not line:
                break
            reply = self.handle_line(line)
            if reply is not None:
                stdout.write(f"{reply}\n")


def main():
    """CLI entry point for parley."""
    import argparse

    parser = argparse.ArgumentParser(description="Parley conversation engine")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    chat_parser = subparsers.add_parser("chat", help="Chat interactively")
    chat_parser.add_argument("--user", required=True, help="User id the conversation is stored under")
    chat_parser.add_argument("--system-prompt", default=DEFAULT_SYSTEM_PROMPT,
                             help="System prompt for new and restored conversations")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command != "chat":
        parser.print_help()
        return

    coordinator = Coordinator.from_env(system_prompt=args.system_prompt)
    try:
        ChatSession(coordinator, args.user).run()
    except KeyboardInterrupt:
        print()
    finally:
        coordinator.shutdown()


if __name__ == "__main__":
    main()
