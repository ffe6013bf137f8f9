"""Catalog of assistants that can be added to a group."""

import logging
from pathlib import Path
from typing import List, Optional

import yaml

from schemas.chat import AgentParticipant, Persona

logger = logging.getLogger(__name__)

DEFAULT_ASSISTANTS_PATH = Path(__file__).parent.parent / "data" / "assistants.yaml"


def load_assistants(path: Optional[str] = None) -> List[AgentParticipant]:
    """
    Load the assistant catalog from YAML.

    Each entry needs ``id``, ``name`` and a ``persona`` mapping with
    ``tone`` and ``expertise``. A missing description is derived from
    the expertise.

    Args:
        path: Path to the YAML file (default: data/assistants.yaml)

    Returns:
        Agents with empty memory banks
    """
    path = Path(path) if path else DEFAULT_ASSISTANTS_PATH

    with open(path, "r") as f:
        entries = yaml.safe_load(f) or []

    assistants = []
    for entry in entries:
        persona = Persona(**entry["persona"])
        assistants.append(AgentParticipant(
            id=str(entry["id"]),
            name=entry["name"],
            avatar=entry.get("avatar", ""),
            description=entry.get("description") or f"AI with expertise in {persona.expertise}.",
            persona=persona,
            is_custom=entry.get("is_custom", False),
            api_key_id=entry.get("api_key_id"),
        ))

    logger.info(f"Loaded {len(assistants)} assistants from {path}")
    return assistants
