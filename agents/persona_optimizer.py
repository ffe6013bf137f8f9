"""LLM helper that refines a rough persona idea into instructions."""

import logging
from typing import Optional

from llm.gateway import GenerationGateway, GenerationError
from schemas.responses import OptimizedPromptOutput

logger = logging.getLogger(__name__)


class PersonaOptimizationError(Exception):
    """Raised when a persona idea could not be refined."""


class PersonaPromptOptimizer:
    """Turns a user's persona idea into "additional instructions" text."""

    PROMPT_TEMPLATE = """You are an expert in prompt engineering. A user wants to create a custom AI assistant for a group chat and has provided an idea for its persona.
Refine this idea into a clear, effective, and detailed prompt that guides the assistant's behavior, tone, and responses.

## The User's Idea
"{idea}"

## Output
Write the optimized prompt for the "additional instructions" field of the persona.
Keep it concise but comprehensive enough to establish a distinct personality.
Do not add any preamble."""

    def __init__(self, gateway: Optional[GenerationGateway]):
        self.gateway = gateway

    async def optimize(self, idea: str) -> str:
        """
        Refine a persona idea.

        Raises:
            PersonaOptimizationError: If the idea is empty or generation fails
        """
        if not idea or not idea.strip():
            raise PersonaOptimizationError("Describe the persona before optimizing it.")

        if self.gateway is None:
            raise PersonaOptimizationError("No API key configured; cannot optimize the persona.")

        try:
            output = await self.gateway.generate(
                self.PROMPT_TEMPLATE.format(idea=idea.strip()),
                OptimizedPromptOutput
            )
        except GenerationError as e:
            logger.error(f"Persona optimization failed: {e}")
            raise PersonaOptimizationError("The persona could not be optimized. Try again.") from e

        optimized = output.optimized_prompt.strip()
        if not optimized:
            raise PersonaOptimizationError("The backend returned an empty persona prompt.")
        return optimized
