"""
System prompt assembly and placeholder substitution.

`build_system_prompt` is shared by the proxy and by clients that call an
upstream directly, so both paths send the model the same instructions.
"""

import re
from typing import Any, Dict, List, Optional

from core.models import Character, Message, Persona

CLOSING_INSTRUCTION = (
    "Respond in character and maintain the personality and speaking style described above."
)

_CHAR_PATTERN = re.compile(r"\{\{char\}\}", re.IGNORECASE)
_USER_PATTERN = re.compile(r"\{\{user\}\}", re.IGNORECASE)

_PLACEHOLDER_FIELDS = (
    "description",
    "personality",
    "first_mes",
    "scenario",
    "depth_prompt",
    "example_dialogue",
    "system_prompt",
    "post_history_instructions",
    "creator_notes",
    "mes_example",
)


def build_system_prompt(
    character: Optional[Character] = None, persona: Optional[Persona] = None
) -> str:
    """
    Build the system prompt from the character card and the user's persona.

    Sections appear in a fixed order and only when present; each one is
    followed by a blank line. The closing instruction is always appended.
    """
    sections = []

    if character:
        sections.append(f"You are {character.name}. {character.personality}")
        if character.scenario:
            sections.append(f"Scenario: {character.scenario}")
        if character.depth_prompt:
            sections.append(character.depth_prompt)
        if character.example_dialogue:
            sections.append(f"Example dialogue:\n{character.example_dialogue}")
        if character.system_prompt:
            sections.append(character.system_prompt)
        if character.post_history_instructions:
            sections.append(
                f"Additional instructions: {character.post_history_instructions}"
            )

    if persona:
        # Unset persona fields are left out rather than rendered as "None"
        details = [
            persona.name,
            f"{persona.age} years old" if persona.age is not None else "",
            persona.gender,
            persona.appearance,
            persona.traits,
            persona.background,
        ]
        sections.append("You are talking to " + ", ".join(d for d in details if d))

    return "".join(f"{section}\n\n" for section in sections) + CLOSING_INSTRUCTION


def replace_placeholders(
    text: str, character: Character, persona: Optional[Persona] = None
) -> str:
    """Replace {{char}} and {{user}} (case-insensitive) in text"""
    if not text:
        return text

    user_name = (persona.name if persona else "") or "User"
    result = _CHAR_PATTERN.sub(lambda _: character.name, text)
    return _USER_PATTERN.sub(lambda _: user_name, result)


def replace_character_placeholders(
    character: Character, persona: Optional[Persona] = None
) -> Character:
    """Return a copy of the character with placeholders replaced in every text field"""
    updates = {}
    for field in _PLACEHOLDER_FIELDS:
        value = getattr(character, field)
        if value:
            updates[field] = replace_placeholders(value, character, persona)

    if character.alternate_greetings is not None:
        updates["alternate_greetings"] = [
            replace_placeholders(greeting, character, persona)
            for greeting in character.alternate_greetings
        ]

    return character.model_copy(update=updates)


def to_chat_message(message: Message) -> Dict[str, Any]:
    """Map a Message onto the chat-completions format (text plus optional image)"""
    if message.image:
        content: Any = [
            {"type": "text", "text": message.content},
            {"type": "image_url", "image_url": {"url": message.image}},
        ]
    else:
        content = message.content
    return {"role": message.role, "content": content}


def build_chat_messages(
    history: List[Message],
    character: Optional[Character] = None,
    persona: Optional[Persona] = None,
) -> List[Dict[str, Any]]:
    """System prompt first, then the user/assistant history in order"""
    system = {"role": "system", "content": build_system_prompt(character, persona)}
    return [system] + [
        to_chat_message(message)
        for message in history
        if message.role in ("user", "assistant")
    ]
