"""Prompt normalization for generation requests.

Normalizes text prompts before they are checked against the content policy
and handed to the render backend.
"""

from typing import Optional

from umrgen.services.exceptions import InvalidPromptError

DEFAULT_MAX_PROMPT_CHARS = 1000


def validate_prompt(prompt: object, max_chars: int = DEFAULT_MAX_PROMPT_CHARS) -> str:
    """Validate and normalize prompt text.

    Args:
        prompt: Prompt text from the client
        max_chars: Longest prompt passed to the backend; longer text is truncated

    Returns:
        Stripped prompt, truncated to ``max_chars``

    Raises:
        InvalidPromptError: If prompt is empty, None, or not a string
    """
    if prompt is None:
        raise InvalidPromptError("Prompt cannot be empty or None")

    if not isinstance(prompt, str):
        raise InvalidPromptError(f"Prompt must be a string, got {type(prompt).__name__}")

    prompt = prompt.strip()
    if not prompt:
        raise InvalidPromptError("Prompt cannot be empty or None")

    return prompt[:max_chars].rstrip()


def normalize_negative_prompt(
    negative_prompt: Optional[str], default: str, max_chars: int = DEFAULT_MAX_PROMPT_CHARS
) -> str:
    """Return the client's negative prompt, or ``default`` when blank."""
    if not isinstance(negative_prompt, str) or not negative_prompt.strip():
        return default
    return negative_prompt.strip()[:max_chars].rstrip()
