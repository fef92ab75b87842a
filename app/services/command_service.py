from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.services import replies
from app.services.message_store import clear_history
from app.services.persona_service import get_persona, load_personas, set_conversation_persona

logger = get_logger("command_service")

START = "start"
HELP = "help"
RESTART = "restart"
MODE = "mode"

COMMANDS = {
    "/start": START,
    "/ayuda": HELP,
    "/help": HELP,
    "/reiniciar": RESTART,
    "/reset": RESTART,
    "/modo": MODE,
    "/mode": MODE,
}

DESCRIPTIONS = {
    "/ayuda": "Muestra los comandos disponibles",
    "/reiniciar": "Reinicia la conversación actual",
    "/modo": "Cambia el modo del asistente. Uso: /modo [{modes}]",
}


@dataclass(frozen=True)
class CommandResult:
    is_command: bool
    response: Optional[str] = None
    action: Optional[str] = None


def parse_command(text: Optional[str]) -> tuple[Optional[str], str]:
    """Split '/cmd@bot args' into ('/cmd', 'args'); (None, '') for plain text."""
    stripped = (text or "").strip()
    if not stripped.startswith("/"):
        return None, ""
    head, _, params = stripped.partition(" ")
    command = head.split("@", 1)[0].lower()
    return command, params.strip()


def build_help_text() -> str:
    modes = ", ".join(load_personas().keys())
    lines = [replies.HELP_HEADER, ""]
    for command, description in DESCRIPTIONS.items():
        lines.append(f"{command}: {description.format(modes=modes)}")
    return "\n".join(lines)


def handle_command(db: Session, conversation_id: str, text: Optional[str]) -> CommandResult:
    command, params = parse_command(text)
    if command is None:
        return CommandResult(is_command=False)

    action = COMMANDS.get(command)
    logger.info(
        "Command received",
        extra={"context": {"conversation_id": conversation_id, "command": command, "action": action}},
    )

    if action == START:
        return CommandResult(is_command=True, response=replies.GREETING, action=action)
    if action == HELP:
        return CommandResult(is_command=True, response=build_help_text(), action=action)
    if action == RESTART:
        removed = clear_history(db, conversation_id)
        logger.info(
            "Conversation history cleared",
            extra={"context": {"conversation_id": conversation_id, "removed": removed}},
        )
        return CommandResult(is_command=True, response=replies.RESTARTED, action=action)
    if action == MODE:
        persona = get_persona(params)
        if persona is None:
            modes = ", ".join(load_personas().keys())
            return CommandResult(is_command=True, response=replies.MODE_UNKNOWN.format(modes=modes), action=action)
        set_conversation_persona(db, conversation_id, persona.name)
        return CommandResult(is_command=True, response=replies.MODE_CHANGED.format(mode=persona.name), action=action)

    return CommandResult(is_command=True, response=replies.UNKNOWN_COMMAND)
