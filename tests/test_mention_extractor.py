"""Tests for mention extraction."""
import pytest

from mention_graph.models.schema import MentionForm, MentionKind
from mention_graph.services.mention_extractor import extract_mentions


def _pairs(text):
    return [(m.kind, m.normalized_key) for m in extract_mentions(text)]


class TestExtractMentions:
    """Tests for extract_mentions()."""

    def test_mixed_mentions_in_order(self):
        mentions = extract_mentions("Meet @2025-03-10 about [[Project Plan]] #urgent")
        assert [(m.kind, m.normalized_key) for m in mentions] == [
            (MentionKind.DATE, "2025-03-10"),
            (MentionKind.NOTE, "project plan"),
            (MentionKind.TAG, "urgent"),
        ]
        assert mentions[1].raw_text == "Project Plan"

    def test_empty_and_plain_text(self):
        assert extract_mentions("") == []
        assert extract_mentions("nothing to see here") == []

    def test_tags_normalized_and_deduplicated(self):
        mentions = extract_mentions("#Work then #work and #WORK")
        assert len(mentions) == 1
        assert mentions[0].kind == MentionKind.TAG
        assert mentions[0].normalized_key == "work"
        # First occurrence keeps its display text
        assert mentions[0].raw_text == "Work"

    def test_note_titles_deduplicated_case_insensitively(self):
        assert _pairs("[[Alpha]] and later [[alpha]]") == [(MentionKind.NOTE, "alpha")]

    def test_same_key_different_kinds_kept(self):
        assert _pairs('[[Foo]] and @"Foo"') == [
            (MentionKind.NOTE, "foo"),
            (MentionKind.CARD, "foo"),
        ]

    def test_note_alias_keeps_target(self):
        mentions = extract_mentions("See [[Project Plan|the plan]].")
        assert len(mentions) == 1
        assert mentions[0].normalized_key == "project plan"
        assert mentions[0].raw_text == "Project Plan"

    @pytest.mark.parametrize("text", ["@2025-02-30", "@2025-13-01", "@2024-00-10"])
    def test_calendar_invalid_date_is_plain_text(self, text):
        assert extract_mentions(f"due {text} maybe") == []

    def test_leap_day_is_valid(self):
        assert _pairs("@2024-02-29") == [(MentionKind.DATE, "2024-02-29")]

    @pytest.mark.parametrize("text", ["[[]]", "[[   ]]", '@""', "# alone", "@ nothing"])
    def test_empty_bodies_ignored(self, text):
        assert extract_mentions(text) == []

    def test_collection_not_read_as_tag(self):
        assert _pairs("filed under @#Reading-List") == [
            (MentionKind.COLLECTION, "reading-list")
        ]

    def test_tag_inside_note_link_not_extracted(self):
        assert _pairs("[[Plan #draft]]") == [(MentionKind.NOTE, "plan #draft")]

    def test_quoted_card(self):
        mentions = extract_mentions('Bookmarked @"Rust Book" yesterday')
        assert len(mentions) == 1
        assert mentions[0].kind == MentionKind.CARD
        assert mentions[0].form == MentionForm.TITLE
        assert mentions[0].normalized_key == "rust book"

    def test_url_card_drops_trailing_punctuation(self):
        mentions = extract_mentions("Read @https://www.Example.com/Docs/.")
        assert len(mentions) == 1
        assert mentions[0].kind == MentionKind.CARD
        assert mentions[0].form == MentionForm.URL
        assert mentions[0].raw_text == "https://www.Example.com/Docs/"
        assert mentions[0].normalized_key == "url:example.com/Docs"

    def test_url_card_keeps_balanced_parenthesis(self):
        mentions = extract_mentions("@https://en.wikipedia.org/wiki/Python_(language)")
        assert mentions[0].raw_text == "https://en.wikipedia.org/wiki/Python_(language)"

    def test_bare_domain_in_parentheses(self):
        assert _pairs("(see @example.com/docs).") == [
            (MentionKind.CARD, "url:example.com/docs")
        ]

    def test_title_and_url_card_with_same_text_are_distinct(self):
        mentions = extract_mentions('@"example.com" and @example.com')
        assert [(m.form, m.normalized_key) for m in mentions] == [
            (MentionForm.TITLE, "example.com"),
            (MentionForm.URL, "url:example.com"),
        ]

    def test_email_address_is_not_a_mention(self):
        assert extract_mentions("mail bob@example.com today") == []

    def test_url_fragment_is_not_a_tag(self):
        assert extract_mentions("https://example.com/page#section") == []

    def test_date_wins_over_bare_domain(self):
        assert _pairs("@2025-03-10") == [(MentionKind.DATE, "2025-03-10")]
