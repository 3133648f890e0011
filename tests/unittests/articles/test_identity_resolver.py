from feedrelay.articles.identity_resolver import (
    CONTENT_HASH,
    GUID,
    LINK,
    TITLE_DATE,
    choose_scheme,
    content_hash,
    resolve_ids,
)
from tests.unittests.fakes import make_article


class TestChooseScheme:
    """The first unique, fully present candidate wins for the whole fetch."""

    def test_unique_guids_are_preferred(self):
        articles = [
            make_article("A", guid="g1", link="https://ex/a"),
            make_article("B", guid="g2", link="https://ex/b"),
        ]
        assert choose_scheme(articles) == GUID

    def test_duplicate_guids_fall_back_to_link(self):
        articles = [
            make_article("A", guid="same", link="https://ex/a"),
            make_article("B", guid="same", link="https://ex/b"),
        ]
        assert choose_scheme(articles) == LINK

    def test_one_missing_guid_disqualifies_guid_for_all(self):
        articles = [
            make_article("A", guid="g1", link="https://ex/a"),
            make_article("B", link="https://ex/b"),
        ]
        assert choose_scheme(articles) == LINK

    def test_title_and_date_used_when_links_repeat(self):
        articles = [
            make_article("A", link="https://ex/", date="2024-01-01"),
            make_article("B", link="https://ex/", date="2024-01-01"),
        ]
        assert choose_scheme(articles) == TITLE_DATE

    def test_content_hash_is_the_fallback(self):
        articles = [make_article("A", description="one"), make_article("A", description="two")]
        assert choose_scheme(articles) == CONTENT_HASH


class TestResolveIds:
    def test_ids_are_deterministic(self):
        articles = [make_article("A", description="x"), make_article("B", description="y")]

        first_scheme, first = resolve_ids(articles)
        second_scheme, second = resolve_ids(articles)

        assert first_scheme == second_scheme == CONTENT_HASH
        assert [a.id for a in first] == [a.id for a in second]
        assert all(a.id for a in first)

    def test_inputs_are_not_mutated(self):
        articles = [make_article("A", guid="g1")]
        _, resolved = resolve_ids(articles)

        assert resolved[0].id == "g1"
        assert articles[0].id == ""

    def test_content_hash_ignores_field_order(self):
        first = make_article("A", description="x", author="me")
        second = make_article("A", author="me", description="x")
        assert content_hash(first) == content_hash(second)
