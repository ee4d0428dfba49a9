"""Interactive CLI that runs the default agent in-process."""

from __future__ import annotations

import logging
from typing import (
    Optional,
    Tuple,
)

from veritype.agent.agent_loop import Agent
from veritype.common import (
    AnsiColors,
    colored_print,
)
from veritype.config import settings
from veritype.exceptions import AgentError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def get_user_message() -> Tuple[str, bool]:
    """
    Get a message from the user via standard input.

    Returns:
        Tuple of (user_input, success_flag)
        The success_flag is False if input couldn't be read (e.g., Ctrl+C)
    """
    try:
        user_input = input().strip()
        return user_input, True
    except (EOFError, KeyboardInterrupt):
        return "", False


def handle_prompt(agent: Agent, prompt: str) -> bool:
    """Run *agent* on *prompt* and print the outcome.  Returns *False* if the run failed."""
    try:
        result = agent.run_sync(prompt)
    except AgentError as exc:
        colored_print(f"[{exc.kind.value}] {exc}", AnsiColors.RED)
        return False

    for turn in result.turns:
        for item in turn.tool_returns:
            color = AnsiColors.RED if item.is_error else AnsiColors.GREEN
            colored_print(f"[{item.name}] {item.content}", color)
    if result.output_retries:
        logger.info("Output needed %d correction(s)", result.output_retries)
    colored_print(str(result.output), AnsiColors.YELLOW)
    return True


def run_cli(agent: Optional[Agent] = None) -> None:
    """Read prompts until 'exit'/'quit' (or Ctrl+C) and run each through the agent."""
    if agent is None:
        agent = Agent.from_settings(settings)

    colored_print("veritype shell - type 'exit' or 'quit' (or Ctrl+C) to exit", AnsiColors.GREEN)
    while True:
        colored_print("\nYou: ", AnsiColors.BLUE, end="")
        user_msg, ok = get_user_message()
        if not ok:
            break  # Exit if user input couldn't be retrieved (e.g., Ctrl+C)
        if user_msg.lower() in {"exit", "quit"}:
            break
        if user_msg:
            handle_prompt(agent, user_msg)


if __name__ == "__main__":
    run_cli()
