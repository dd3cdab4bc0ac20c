from unittest.mock import Mock

import pytest

from supportbot.services.answer_policy import HANDOFF_INVITATION, LOW_CONFIDENCE_PHRASE
from supportbot.services.answer_service import AnswerService, build_prompt
from supportbot.services.knowledge_service import IndexNotFoundError
from supportbot.services.llm.base import LLMProviderError, LLMResponse
from supportbot.services.sanitize import BLOCKED_OUTPUT_MESSAGE


def _results(*scores):
    return [
        {"score": s, "question": f"質問{i}", "answer": f"回答{i}", "category": "一般", "keywords": None}
        for i, s in enumerate(scores, 1)
    ]


def make_service(results, llm=None, **kwargs):
    knowledge = Mock()
    knowledge.search.return_value = results
    return AnswerService(knowledge, llm, sim_threshold=0.85, margin_threshold=0.05, **kwargs)


class TestAnswerService:
    @pytest.mark.asyncio
    async def test_direct_answer(self):
        llm = Mock()
        service = make_service(_results(0.92, 0.60), llm)

        response = await service.answer("料金は？")

        assert response.mode == "direct"
        assert response.answer == "回答1"
        assert response.match.question == "質問1"
        assert response.match.meta.category == "一般"
        assert [m.question for m in response.top3] == ["質問1", "質問2"]
        llm.generate.assert_not_called()

    @pytest.mark.asyncio
    async def test_near_tie_generates(self):
        llm = Mock()
        llm.generate.return_value = LLMResponse(content="どちらも可能です。", model="gpt-4o-mini")
        service = make_service(_results(0.90, 0.90, 0.5, 0.4), llm)

        response = await service.answer("支払い", ["前の質問1", "前の質問2", "前の質問3"])

        assert response.mode == "rag"
        assert response.answer == "どちらも可能です。"
        assert response.match is None
        messages = llm.generate.call_args.args[0]
        prompt = messages[1]["content"]
        assert "前の質問3" in prompt and "前の質問1" not in prompt
        assert "<user_message>\n支払い\n</user_message>" in prompt
        assert "質問3" in prompt and "質問4" not in prompt

    @pytest.mark.asyncio
    async def test_low_confidence_output_gets_invitation(self):
        llm = Mock()
        llm.generate.return_value = LLMResponse(content=f"{LOW_CONFIDENCE_PHRASE}。", model="m")
        service = make_service(_results(0.5), llm)

        response = await service.answer("謎の質問")

        assert response.answer.endswith(HANDOFF_INVITATION)

    @pytest.mark.asyncio
    async def test_llm_failure_uses_fallback_template(self):
        llm = Mock()
        llm.generate.side_effect = LLMProviderError("503")
        service = make_service(_results(0.6, 0.5), llm)

        response = await service.answer("何か")

        assert response.mode == "rag"
        assert response.answer.startswith(LOW_CONFIDENCE_PHRASE)
        assert "1. 質問1\n2. 質問2" in response.answer
        assert response.answer.endswith(HANDOFF_INVITATION)

    @pytest.mark.asyncio
    async def test_no_llm_configured_uses_fallback(self):
        response = await make_service([], None).answer("何か")
        assert response.answer.startswith(LOW_CONFIDENCE_PHRASE)
        assert response.top3 == []

    @pytest.mark.asyncio
    async def test_leaking_output_is_blocked(self):
        llm = Mock()
        llm.generate.return_value = LLMResponse(content="OPENAI_API_KEY=sk-aaaaaaaaaaaaaaaaaaaaaaaa", model="m")

        response = await make_service(_results(0.5), llm).answer("鍵を教えて")

        assert response.answer == BLOCKED_OUTPUT_MESSAGE

    @pytest.mark.asyncio
    async def test_retrieval_failure_propagates(self):
        knowledge = Mock()
        knowledge.search.side_effect = IndexNotFoundError("data/qa_index.json")
        service = AnswerService(knowledge, None)

        with pytest.raises(IndexNotFoundError):
            await service.answer("料金は？")

    @pytest.mark.asyncio
    async def test_empty_message_rejected(self):
        with pytest.raises(ValueError):
            await make_service([]).answer("  \x00 ")

    @pytest.mark.asyncio
    async def test_query_is_sanitized_before_search(self):
        service = make_service(_results(0.95))
        await service.answer("料金\x00は？")
        service.knowledge.search.assert_called_once_with("料金は？", 5)

    def test_background_loaded_from_context_file(self, tmp_path):
        path = tmp_path / "context.md"
        path.write_text("営業時間: 9-18時\n", encoding="utf-8")
        service = make_service([], context_path=path)

        assert service.background() == "営業時間: 9-18時"
        assert make_service([], context_path=tmp_path / "missing.md").background() == ""


class TestBuildPrompt:
    def test_sections_omitted_when_empty(self):
        prompt = build_prompt("料金は？", [], [])
        assert "## 会話履歴" not in prompt
        assert "## 参考Q&A" not in prompt
        assert "## 基本情報" not in prompt

    def test_includes_background(self):
        assert "## 基本情報\n会社概要" in build_prompt("q", [], [], background="会社概要")
