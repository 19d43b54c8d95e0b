"""Conversation history and context compaction for the agent loop.

Sizes are estimated at ~4 characters per token over each message's JSON
form. Only monotonicity matters, not accuracy.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import re
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Literal

from agentloop.llm.provider import LLMProvider

logger = logging.getLogger(__name__)

CONTEXT_THRESHOLD_BASIC = 80_000
CONTEXT_THRESHOLD_AI = 120_000
KEEP_RECENT = 8

# Model-assisted summary bounds
SUMMARY_MAX_OUTPUT_TOKENS = 2000
TRANSCRIPT_MAX_CHARS = 50_000
_MSG_LONG = 2000
_MSG_HEAD = 1500
_MSG_TAIL = 300

# Body truncation when the recent window alone is over budget
_BODY_LIMIT = 5000
_BODY_HEAD = 3000
_BODY_TAIL = 1000


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


@dataclass
class Message:
    """A single message in the loop conversation.

    Attributes:
        seq: Monotonic sequence number.
        role: "user" or "assistant".
        content: Message text.
        is_summary: True for the synthetic message produced by compaction.
    """

    seq: int
    role: Literal["user", "assistant"]
    content: str
    is_summary: bool = False

    def to_llm_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}

    def estimated_tokens(self) -> int:
        return estimate_tokens(json.dumps(self.to_llm_dict()))


class Conversation:
    """Append-only message history owned by one loop run."""

    def __init__(self) -> None:
        self.messages: list[Message] = []
        self._next_seq = 0

    def add(self, role: Literal["user", "assistant"], content: str) -> Message:
        msg = Message(seq=self._next_seq, role=role, content=content)
        self._next_seq += 1
        self.messages.append(msg)
        return msg

    def __len__(self) -> int:
        return len(self.messages)


def estimate_total(messages: list[Message], system_prompt: str = "") -> int:
    return estimate_tokens(system_prompt) + sum(m.estimated_tokens() for m in messages)


# ---------------------------------------------------------------------------
# Summary cache
# ---------------------------------------------------------------------------


class SummaryCache:
    """Tiny LRU of model-generated summaries keyed by content digest."""

    def __init__(self, max_entries: int = 1):
        self.max_entries = max(1, max_entries)
        self._entries: OrderedDict[str, str] = OrderedDict()

    @staticmethod
    def digest(messages: list[Message]) -> str:
        h = hashlib.sha256()
        for m in messages:
            h.update(m.role.encode())
            h.update(b"\x00")
            h.update(m.content.encode("utf-8", errors="replace"))
            h.update(b"\x01")
        return h.hexdigest()

    def get(self, key: str) -> str | None:
        value = self._entries.get(key)
        if value is not None:
            self._entries.move_to_end(key)
        return value

    def put(self, key: str, summary: str) -> None:
        self._entries[key] = summary
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------

_TOOL_RE = re.compile(r"\b(bash|readFile|writeFile|editFile|openBrowser|screenshot|think)\b")
_TOOL_AI_RE = re.compile(r"\b(bash|readFile|writeFile|editFile|openBrowser|screenshot|think|done)\b")
_PATH_RE = re.compile(
    r"""(?:path['":\s]+)?["']([\w/.-]+\.(?:tsx?|jsx?|py|json|md|css|html|yml|yaml|toml))["']"""
)
_COMMAND_RE = re.compile(r"""(?:bash|command)['":\s]+["']([^"']{5,80})["']""")
_WRITE_RE = re.compile(r"""writeFile[^}]*?path["']?\s*[:=]\s*["']([^"']+\.[a-z]+)["']""")
_READ_RE = re.compile(r"""readFile[^}]*?path["']?\s*[:=]\s*["']([^"']+\.[a-z]+)["']""")
_ERROR_RE = re.compile(r"(?:error|Error|ERROR|failed|Failed|FAILED)[:\s]+[^\n]{10,100}")

SUMMARY_SYSTEM_PROMPT = """\
You are summarizing an AI agent's earlier conversation history to preserve \
context while reducing token usage.

Your summary will be injected into the conversation so the agent can continue \
its work with full awareness of what happened before.

Create a detailed, structured summary that includes:

1. **Task Progress**: What has been accomplished so far? What's the current state?
2. **Key Decisions**: Important choices made and why
3. **Files & Changes**: What files were created, modified, or read? Include paths.
4. **Errors & Solutions**: Errors encountered and how they were resolved (or if still pending)
5. **Current Focus**: What was the agent working on most recently?
6. **Important Context**: Domain knowledge, constraints, or requirements discovered

This summary replaces the original messages, so keep critical information.
Use markdown. Include specific file paths, error messages, and code snippets when relevant."""


def _ordered_unique(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def heuristic_summary(messages: list[Message]) -> str:
    """Markdown digest of tools, files and commands mentioned in ``messages``."""
    tools: list[str] = []
    files: list[str] = []
    commands: list[str] = []

    for msg in messages:
        content = msg.content
        tools.extend(_TOOL_RE.findall(content))
        files.extend(m.group(1) for m in list(_PATH_RE.finditer(content))[:20])
        commands.extend(m.group(1) for m in list(_COMMAND_RE.finditer(content))[:5])

    tools = _ordered_unique(tools)
    files = _ordered_unique(files)
    commands = [c for c in commands if len(c) > 5]

    parts = [
        "## Earlier Conversation Summary (Heuristic)",
        "",
        f"**Messages summarized:** {len(messages)}",
    ]
    if tools:
        parts.append(f"**Tools used:** {', '.join(tools)}")
    if files:
        parts.append(f"**Files explored:** {', '.join(files[:15])}")
    if commands:
        parts.append(f"**Commands run:** {'; '.join(commands[:5])}")
    parts.extend(["", "---", "*Continue with the task. Recent context follows.*"])
    return "\n".join(parts)


def build_summary_metadata(messages: list[Message]) -> str:
    tools: list[str] = []
    written: list[str] = []
    read: list[str] = []
    errors: list[str] = []

    for msg in messages:
        content = msg.content
        tools.extend(_TOOL_AI_RE.findall(content))
        written.extend(_WRITE_RE.findall(content))
        read.extend(_READ_RE.findall(content))
        errors.extend(m.group(0)[:100] for m in list(_ERROR_RE.finditer(content))[:5])

    lines = [f"Messages being summarized: {len(messages)}"]
    if tools:
        lines.append(f"Tools used: {', '.join(_ordered_unique(tools))}")
    if written:
        lines.append(f"Files modified: {', '.join(_ordered_unique(written)[:20])}")
    if read:
        lines.append(f"Files read: {', '.join(_ordered_unique(read)[:20])}")
    if errors:
        lines.append(f"Errors encountered: {'; '.join(errors[:3])}")
    return "\n".join(lines)


def build_transcript(messages: list[Message]) -> str:
    chunks = []
    for i, msg in enumerate(messages, start=1):
        content = msg.content
        if len(content) > _MSG_LONG:
            content = content[:_MSG_HEAD] + "\n...[truncated]..." + content[-_MSG_TAIL:]
        chunks.append(f"[{msg.role.upper()} {i}]\n{content}")
    transcript = "\n\n---\n\n".join(chunks)
    if len(transcript) > TRANSCRIPT_MAX_CHARS:
        transcript = transcript[:TRANSCRIPT_MAX_CHARS] + "\n\n...[earlier messages truncated]..."
    return transcript


def truncate_body(content: str) -> str:
    if len(content) <= _BODY_LIMIT:
        return content
    elided = len(content) - _BODY_HEAD - _BODY_TAIL
    return content[:_BODY_HEAD] + f"\n... [{elided} chars truncated] ...\n" + content[-_BODY_TAIL:]


# ---------------------------------------------------------------------------
# Compactor
# ---------------------------------------------------------------------------


@dataclass
class CompactionResult:
    messages: list[Message]
    original_tokens: int
    new_tokens: int
    strategy: str = "none"  # none | heuristic | ai | truncate

    @property
    def compacted(self) -> bool:
        return self.strategy != "none"


class ContextCompactor:
    """Keeps the conversation under the context budget.

    At or below ``basic_threshold`` the input list is returned as-is.
    Above it, everything but the last ``keep_recent`` messages collapses
    into one summary message: heuristic up to ``ai_threshold``, model-written
    beyond it when a summarization model is available.
    """

    def __init__(
        self,
        llm: LLMProvider | None = None,
        basic_threshold: int = CONTEXT_THRESHOLD_BASIC,
        ai_threshold: int = CONTEXT_THRESHOLD_AI,
        keep_recent: int = KEEP_RECENT,
        cache: SummaryCache | None = None,
    ):
        self.llm = llm
        self.basic_threshold = basic_threshold
        self.ai_threshold = ai_threshold
        self.keep_recent = keep_recent
        self.cache = cache if cache is not None else SummaryCache()

    async def compact(self, messages: list[Message], system_prompt: str = "") -> CompactionResult:
        total = estimate_total(messages, system_prompt)
        if total <= self.basic_threshold:
            return CompactionResult(messages=messages, original_tokens=total, new_tokens=total)

        recent = messages[-self.keep_recent :] if self.keep_recent else []
        older = messages[: len(messages) - len(recent)]
        strategy = "truncate"
        result: list[Message] = list(recent)

        if older:
            if total > self.ai_threshold and self.llm is not None:
                summary, strategy = await self._model_summary(older)
            else:
                logger.debug("Context at ~%d tokens, using heuristic summary", total)
                summary, strategy = heuristic_summary(older), "heuristic"
            summary_msg = Message(seq=older[-1].seq, role="user", content=summary, is_summary=True)
            result = [summary_msg, *recent]

        recent_tokens = estimate_total(recent, system_prompt)
        if recent_tokens > self.basic_threshold:
            logger.warning(
                "Recent window alone is ~%d tokens; truncating long message bodies", recent_tokens
            )
            result = [
                m if m.is_summary else Message(m.seq, m.role, truncate_body(m.content), m.is_summary)
                for m in result
            ]

        new_total = estimate_total(result, system_prompt)
        logger.info("Context compacted (%s): ~%d -> ~%d tokens", strategy, total, new_total)
        return CompactionResult(
            messages=result, original_tokens=total, new_tokens=new_total, strategy=strategy
        )

    async def _model_summary(self, older: list[Message]) -> tuple[str, str]:
        key = SummaryCache.digest(older)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Using cached model summary")
            return cached, "ai"

        prompt = (
            "Summarize this agent conversation history:\n\n"
            f"**Metadata:**\n{build_summary_metadata(older)}\n\n"
            f"**Conversation:**\n{build_transcript(older)}"
        )
        try:
            response = await self.llm.complete(
                messages=[{"role": "user", "content": prompt}],
                system=SUMMARY_SYSTEM_PROMPT,
                max_tokens=SUMMARY_MAX_OUTPUT_TOKENS,
            )
        except Exception as e:
            logger.warning("Model summary failed, falling back to heuristic: %s", e)
            return heuristic_summary(older), "heuristic"

        text = (response.content or "").strip()
        if not text:
            logger.warning("Model summary was empty, falling back to heuristic")
            return heuristic_summary(older), "heuristic"

        summary = (
            "## Earlier Conversation Summary (AI-Generated)\n\n"
            f"{text}\n\n---\n*{len(older)} messages summarized. Recent context follows.*"
        )
        self.cache.put(key, summary)
        return summary, "ai"
