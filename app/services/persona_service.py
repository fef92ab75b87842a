from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

import yaml
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import ConversationProfile
from app.services.timeutil import utcnow

logger = get_logger("persona_service")

PERSONAS_PATH = Path(__file__).resolve().parents[1] / "personas" / "personas.yaml"
FALLBACK_INSTRUCTION = "Eres un asistente amigable que responde de manera concisa y útil."


@dataclass(frozen=True)
class Persona:
    name: str
    description: str
    instruction: str


@lru_cache(maxsize=4)
def load_personas(path: Path = PERSONAS_PATH) -> dict[str, Persona]:
    if not path.exists():
        logger.warning(f"Persona catalogue missing: {path}")
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    raw = data.get("personas") if isinstance(data, dict) else None
    if not isinstance(raw, dict):
        return {}

    personas = {}
    for name, entry in raw.items():
        if not isinstance(entry, dict) or not isinstance(entry.get("instruction"), str):
            continue
        personas[str(name)] = Persona(
            name=str(name),
            description=str(entry.get("description") or name),
            instruction=entry["instruction"].strip(),
        )
    return personas


def get_persona(name: Optional[str]) -> Optional[Persona]:
    if not name:
        return None
    return load_personas().get(name.strip().lower())


def get_conversation_persona(db: Session, conversation_id: str) -> Optional[str]:
    profile = db.query(ConversationProfile).filter(ConversationProfile.conversation_id == conversation_id).first()
    return profile.persona if profile else None


def set_conversation_persona(db: Session, conversation_id: str, persona: str) -> None:
    profile = db.query(ConversationProfile).filter(ConversationProfile.conversation_id == conversation_id).first()
    if profile is None:
        profile = ConversationProfile(conversation_id=conversation_id, persona=persona)
        db.add(profile)
    else:
        profile.persona = persona
    profile.updated_at = utcnow()
    db.commit()


def get_system_instruction(db: Session, conversation_id: str, default_persona: str) -> str:
    """System instruction for the conversation's persona, falling back to the default persona."""
    for name in (get_conversation_persona(db, conversation_id), default_persona):
        persona = get_persona(name)
        if persona:
            return persona.instruction
    return FALLBACK_INSTRUCTION
