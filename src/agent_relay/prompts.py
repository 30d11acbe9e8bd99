"""Prompt composition for agent requests."""

from agent_relay.models import SendRequest

DEFAULT_MAX_CONTEXT_LENGTH = 50_000

# Separates attached context from the user's question.
CONTEXT_TEMPLATE = """\
{label}

{context}

---

User Question: {message}"""


def context_label(file_name: str | None) -> str:
    return f"Document: {file_name}" if file_name else "Context"


def compose_prompt(
    request: SendRequest,
    *,
    max_context_length: int = DEFAULT_MAX_CONTEXT_LENGTH,
) -> str:
    """Build the text written to the agent's stdin.

    Context is attached only when there is some and ``context_type`` is not
    ``"none"``; it is cut to ``max_context_length`` characters first.
    """
    if not request.context or request.context_type == "none":
        return request.message

    context = request.context
    if max_context_length > 0 and len(context) > max_context_length:
        context = context[:max_context_length]

    return CONTEXT_TEMPLATE.format(
        label=context_label(request.file_name),
        context=context,
        message=request.message,
    )
