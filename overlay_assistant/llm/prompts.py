"""
Prompt building for fast/full answer streams.

Templates use ``$name`` placeholders:
    $highlighted: the question being answered
    $recent: the most recent transcript lines
    $transcript: the whole transcript
"""
import re
from typing import NamedTuple

from pydantic import BaseModel, Field

_VARIABLE = re.compile(r"\$(\w+)")

FAST_HINT_INSTRUCTION = (
    "\n\nGive a 1-2 sentence answer. Use bullet points. "
    "No explanations, just the key facts."
)
FULL_ANSWER_INSTRUCTION = (
    "\n\nProvide a focused, practical response. Include key points and a "
    "brief example if helpful. Keep it concise but complete."
)


class PromptTemplate(BaseModel):
    """System prompt plus a user prompt pattern."""

    id: str
    name: str = ""
    system_prompt: str
    user_prompt_template: str = Field(
        default="Question: $highlighted\n\nRecent conversation:\n$recent"
    )


DEFAULT_TEMPLATE = PromptTemplate(
    id="default",
    name="Live assistant",
    system_prompt=(
        "You are an assistant listening to a live conversation. "
        "Answer the highlighted question using the conversation as context."
        "\n\nFull transcript:\n$transcript"
    ),
)


class BuiltPrompt(NamedTuple):
    system: str
    user: str  # fast stream
    user_full: str  # full and reasoning streams


def substitute_variables(template: str, variables: dict[str, str]) -> str:
    """Replace ``$name`` placeholders; unknown names are left as written."""
    def _replace(match: re.Match) -> str:
        value = variables.get(match.group(1))
        return match.group(0) if value is None else value
    return _VARIABLE.sub(_replace, template)


def build_prompt(
    question: str,
    recent: str,
    transcript: str,
    template: PromptTemplate = DEFAULT_TEMPLATE,
) -> BuiltPrompt:
    """Build the system prompt and the fast/full user prompts."""
    variables = {
        "highlighted": question,
        "recent": recent,
        "transcript": transcript,
    }
    system = substitute_variables(template.system_prompt, variables)
    base = substitute_variables(template.user_prompt_template, variables)
    return BuiltPrompt(
        system=system,
        user=base + FAST_HINT_INSTRUCTION,
        user_full=base + FULL_ANSWER_INSTRUCTION,
    )
