"""Tests for context compaction, summaries and the summary cache."""

from __future__ import annotations

import pytest

from agentloop.llm.mock import MockLLMProvider
from agentloop.loop.conversation import (
    ContextCompactor,
    Conversation,
    Message,
    SummaryCache,
    estimate_tokens,
    estimate_total,
    heuristic_summary,
    truncate_body,
)


def make_conversation(count: int, size: int) -> list[Message]:
    conv = Conversation()
    for i in range(count):
        conv.add("user" if i % 2 == 0 else "assistant", f"message {i} " + "x" * size)
    return conv.messages


def small_compactor(llm=None, **kwargs) -> ContextCompactor:
    return ContextCompactor(llm=llm, basic_threshold=1000, ai_threshold=2000, keep_recent=2, **kwargs)


# ---------------------------------------------------------------------------
# Estimation
# ---------------------------------------------------------------------------


class TestEstimation:
    def test_four_chars_per_token_rounded_up(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_total_includes_system_prompt(self):
        messages = make_conversation(2, 10)
        assert estimate_total(messages, "s" * 400) == 100 + estimate_total(messages)

    def test_conversation_sequence_numbers(self):
        messages = make_conversation(3, 1)
        assert [m.seq for m in messages] == [0, 1, 2]
        assert [m.role for m in messages] == ["user", "assistant", "user"]


# ---------------------------------------------------------------------------
# Compaction
# ---------------------------------------------------------------------------


class TestCompaction:
    @pytest.mark.asyncio
    async def test_under_threshold_returns_same_list(self):
        messages = make_conversation(4, 100)
        result = await small_compactor().compact(messages)
        assert result.messages is messages
        assert result.strategy == "none"
        assert not result.compacted
        assert result.original_tokens == result.new_tokens

    @pytest.mark.asyncio
    async def test_heuristic_summary_between_thresholds(self):
        messages = make_conversation(6, 1000)
        result = await small_compactor().compact(messages)

        assert result.strategy == "heuristic"
        assert len(result.messages) == 3
        summary = result.messages[0]
        assert summary.is_summary
        assert summary.role == "user"
        assert summary.content.startswith("## Earlier Conversation Summary (Heuristic)")
        assert "**Messages summarized:** 4" in summary.content
        assert result.messages[1:] == messages[-2:]
        assert result.new_tokens < result.original_tokens

    @pytest.mark.asyncio
    async def test_ai_summary_above_upper_threshold(self):
        llm = MockLLMProvider(summary_text="Built the API and wrote tests.")
        messages = make_conversation(10, 1000)

        result = await small_compactor(llm).compact(messages, "system")

        assert result.strategy == "ai"
        content = result.messages[0].content
        assert content.startswith("## Earlier Conversation Summary (AI-Generated)")
        assert "Built the API and wrote tests." in content
        assert "*8 messages summarized. Recent context follows.*" in content
        assert llm.summary_calls[0]["max_tokens"] == 2000

    @pytest.mark.asyncio
    async def test_ai_summary_is_cached_by_content(self):
        llm = MockLLMProvider(summary_text="Summary.")
        compactor = small_compactor(llm)
        messages = make_conversation(10, 1000)

        first = await compactor.compact(messages)
        second = await compactor.compact(list(messages))

        assert len(llm.summary_calls) == 1
        assert first.messages[0].content == second.messages[0].content
        assert len(compactor.cache) == 1

    @pytest.mark.asyncio
    async def test_model_failure_falls_back_to_heuristic(self):
        llm = MockLLMProvider(summary_error=RuntimeError("rate limited"))
        result = await small_compactor(llm).compact(make_conversation(10, 1000))
        assert result.strategy == "heuristic"
        assert "(Heuristic)" in result.messages[0].content

    @pytest.mark.asyncio
    async def test_empty_model_summary_falls_back_to_heuristic(self):
        llm = MockLLMProvider(summary_text="   ")
        compactor = small_compactor(llm)
        result = await compactor.compact(make_conversation(10, 1000))
        assert result.strategy == "heuristic"
        assert len(compactor.cache) == 0

    @pytest.mark.asyncio
    async def test_no_model_uses_heuristic_at_any_size(self):
        result = await small_compactor().compact(make_conversation(10, 1000))
        assert result.strategy == "heuristic"

    @pytest.mark.asyncio
    async def test_oversized_recent_window_is_truncated(self):
        messages = make_conversation(2, 6000)
        result = await small_compactor().compact(messages)

        assert result.strategy == "truncate"
        assert len(result.messages) == 2
        for msg in result.messages:
            assert "chars truncated" in msg.content
            assert len(msg.content) < 5000
        # input untouched
        assert len(messages[0].content) > 6000

    @pytest.mark.asyncio
    async def test_summary_survives_recent_truncation(self):
        messages = make_conversation(4, 6000)
        result = await small_compactor().compact(messages)
        assert result.strategy == "heuristic"
        assert result.messages[0].is_summary
        assert "chars truncated" not in result.messages[0].content
        assert all("chars truncated" in m.content for m in result.messages[1:])


class TestDefaultThresholds:
    """Boundaries at the stock 80k / 120k token thresholds and K=8."""

    @staticmethod
    def sized(total_tokens: int) -> tuple[list[Message], str]:
        # ~4k-token messages; the system prompt pads to the exact total
        messages = make_conversation(total_tokens // 4100, 16_000)
        padding = total_tokens - estimate_total(messages)
        assert padding > 0
        return messages, "s" * (4 * padding)

    @pytest.mark.asyncio
    async def test_exactly_at_basic_threshold_is_unchanged(self):
        messages, system = self.sized(80_000)
        assert estimate_total(messages, system) == 80_000

        result = await ContextCompactor().compact(messages, system)

        assert result.messages is messages
        assert result.strategy == "none"

    @pytest.mark.asyncio
    async def test_one_token_over_keeps_last_eight_verbatim(self):
        messages, system = self.sized(80_001)

        result = await ContextCompactor().compact(messages, system)

        assert result.strategy == "heuristic"
        assert len(result.messages) == 9
        assert result.original_tokens == 80_001
        assert result.messages[0].is_summary
        assert result.messages[-8:] == messages[-8:]

    @pytest.mark.asyncio
    async def test_below_ai_threshold_stays_heuristic_with_model(self):
        llm = MockLLMProvider(summary_text="Model summary.")
        messages, system = self.sized(120_000)

        result = await ContextCompactor(llm=llm).compact(messages, system)

        assert result.strategy == "heuristic"
        assert llm.summary_calls == []

    @pytest.mark.asyncio
    async def test_above_ai_threshold_uses_model(self):
        llm = MockLLMProvider(summary_text="Model summary.")
        messages, system = self.sized(120_001)

        result = await ContextCompactor(llm=llm).compact(messages, system)

        assert result.strategy == "ai"
        assert len(llm.summary_calls) == 1
        assert result.messages[-8:] == messages[-8:]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestSummaryHelpers:
    def test_heuristic_summary_extracts_tools_files_and_commands(self):
        conv = Conversation()
        conv.add("assistant", '[writeFile] {"path": "src/server.js", "content": "..."} -> write src/server.js')
        conv.add("assistant", '[bash] {"command": "npm install express"} -> bash (exit 0, 12 chars)')

        summary = heuristic_summary(conv.messages)

        assert "**Messages summarized:** 2" in summary
        assert "**Tools used:** writeFile, bash" in summary
        assert "src/server.js" in summary
        assert "npm install express" in summary
        assert summary.endswith("*Continue with the task. Recent context follows.*")

    def test_truncate_body(self):
        assert truncate_body("short") == "short"
        body = "a" * 3000 + "b" * 2000 + "c" * 1000
        truncated = truncate_body(body)
        assert truncated.startswith("a" * 3000)
        assert truncated.endswith("c" * 1000)
        assert "[2000 chars truncated]" in truncated


class TestSummaryCache:
    def test_single_slot_evicts_oldest(self):
        cache = SummaryCache()
        cache.put("a", "first")
        cache.put("b", "second")
        assert cache.get("a") is None
        assert cache.get("b") == "second"
        assert len(cache) == 1

    def test_lru_order(self):
        cache = SummaryCache(max_entries=2)
        cache.put("a", "1")
        cache.put("b", "2")
        cache.get("a")
        cache.put("c", "3")
        assert cache.get("a") == "1"
        assert cache.get("b") is None

    def test_digest_depends_on_role_and_content(self):
        user = [Message(0, "user", "hello")]
        assistant = [Message(0, "assistant", "hello")]
        assert SummaryCache.digest(user) != SummaryCache.digest(assistant)
        assert SummaryCache.digest(user) == SummaryCache.digest([Message(5, "user", "hello")])
