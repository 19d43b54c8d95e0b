"""Prompt assembly for the agent loop."""

from __future__ import annotations

from dataclasses import dataclass

_PREAMBLE = """\
You are an autonomous coding agent working in a loop. Each turn you may call \
tools to inspect and change the workspace; the loop keeps calling you until you \
signal completion or a budget runs out.

Be methodical and thorough:
- Explore before changing anything, and read files before editing them.
- Make small, verifiable changes and check the result of each one.
- Use the think tool to plan when a step is not obvious.
- When the task is fully complete and verified, call the done tool with a short summary."""

_IMPORTANT = """\
## Important

- Shell commands run through the bash tool; they must terminate on their own.
- Long-running programs (dev servers, watchers) must be launched with startProcess, \
never with bash, and stopped with stopProcess when no longer needed.
- Each turn shows the iteration and cost budget; plan to finish well within it.
- Call done only when the task is actually complete."""


@dataclass
class ContextFile:
    """A file whose content is embedded in the system prompt."""

    name: str
    content: str


def build_system_prompt(
    task: str,
    rules: list[str] | None = None,
    context: str | list[ContextFile] | None = None,
    custom_system_prompt: str | None = None,
) -> str:
    """Assemble the system prompt. A custom prompt is returned verbatim."""
    if custom_system_prompt:
        return custom_system_prompt

    sections = [_PREAMBLE, f"## Your Task\n\n{task}"]

    if rules:
        sections.append("## Rules\n\n" + "\n\n".join(rules))

    if isinstance(context, str):
        if context.strip():
            sections.append(f"## Context\n\n{context}")
    elif context:
        files = "\n\n".join(f"### {f.name}\n\n```\n{f.content}\n```" for f in context)
        sections.append(f"## Context Files\n\n{files}")

    sections.append(_IMPORTANT)
    return "\n\n".join(sections)


def format_iteration_context(iteration: int, max_iterations: int, cost: float, max_cost: float) -> str:
    return f"[Iteration {iteration + 1}/{max_iterations}, Cost: ${cost:.2f}/${max_cost:.2f}]"


def build_nudge_message(message: str) -> str:
    return f"[System Nudge]: {message}"


def build_iteration_message(
    iteration: int,
    max_iterations: int,
    cost: float,
    max_cost: float,
    nudge: str | None = None,
) -> str:
    """User message opening an iteration: budget banner plus any pending nudge.

    The first iteration also carries a "Begin." placeholder.
    """
    parts = [format_iteration_context(iteration, max_iterations, cost, max_cost)]
    if nudge:
        parts.append(build_nudge_message(nudge))
    if iteration == 0:
        parts.append("Begin.")
    return "\n\n".join(parts)
