"""
Knowledge retriever tests
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from helpdesk.triage.application import IKnowledgeBaseRepository, KnowledgeRetriever
from helpdesk.triage.domain import RetrievedArticle


def _article(article_id, score):
    return RetrievedArticle(id=article_id, title=article_id.title(), body="", score=score)


@pytest.fixture
def kb_repo():
    repo = MagicMock(spec=IKnowledgeBaseRepository)
    repo.full_text_search = AsyncMock(return_value=[])
    repo.loose_search = AsyncMock(return_value=[])
    repo.latest = AsyncMock(return_value=[])
    return repo


class TestKnowledgeRetriever:

    @pytest.mark.asyncio
    async def test_full_text_hits_skip_loose_search(self, kb_repo):
        kb_repo.full_text_search.return_value = [_article("a", 0.2), _article("b", 0.7)]

        articles = await KnowledgeRetriever(kb_repo).search("refund my invoice", "billing", 3)

        assert [a.id for a in articles] == ["b", "a"]
        kb_repo.full_text_search.assert_awaited_once_with("refund my invoice", "billing", 3)
        kb_repo.loose_search.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_loose_search_when_full_text_is_empty(self, kb_repo):
        kb_repo.loose_search.return_value = [_article("c", 0.0)]

        articles = await KnowledgeRetriever(kb_repo).search("Refund, refund INVOICE!", "billing", 3)

        assert [a.id for a in articles] == ["c"]
        kb_repo.loose_search.assert_awaited_once_with(["refund", "invoice"], "billing", 3)

    @pytest.mark.asyncio
    async def test_empty_query_returns_latest(self, kb_repo):
        kb_repo.latest.return_value = [_article("new", 0.0)]

        articles = await KnowledgeRetriever(kb_repo).search("   ", "tech", 2)

        assert [a.id for a in articles] == ["new"]
        kb_repo.latest.assert_awaited_once_with("tech", 2)
        kb_repo.full_text_search.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("category", ["other", None, ""])
    async def test_other_category_disables_tag_filter(self, kb_repo, category):
        await KnowledgeRetriever(kb_repo).search("hello", category, 3)

        kb_repo.full_text_search.assert_awaited_once_with("hello", None, 3)

    @pytest.mark.asyncio
    async def test_truncates_and_keeps_order_of_equal_scores(self, kb_repo):
        kb_repo.full_text_search.return_value = [
            _article("first", 0.5), _article("second", 0.5), _article("best", 0.9), _article("low", 0.1)
        ]

        articles = await KnowledgeRetriever(kb_repo).search("query", None, 3)

        assert [a.id for a in articles] == ["best", "first", "second"]

    @pytest.mark.asyncio
    async def test_search_errors_propagate(self, kb_repo):
        kb_repo.full_text_search.side_effect = RuntimeError("search backend down")

        with pytest.raises(RuntimeError, match="search backend down"):
            await KnowledgeRetriever(kb_repo).search("query", None, 3)

    def test_query_words(self):
        assert KnowledgeRetriever.query_words("Can't log-in, LOG in!") == ["can", "t", "log", "in"]
