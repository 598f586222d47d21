"""Tests for composing the Slack notification blocks."""
from __future__ import annotations

from scripts.media_notify import (
    MASKED_TOKEN,
    DetectedLinks,
    NasaMediaCard,
    PullRequestContext,
    UniversalLinkResult,
    build_snippet,
    compose_notification,
    extract_links,
)

PR = PullRequestContext(
    title="Fix loop",
    body="",
    url="https://github.com/o/r/pull/7",
    author="octocat",
    source_branch="feature",
    target_branch="main",
)

CARD = NasaMediaCard(
    title="Jupiter",
    description="Gas giant",
    date_created="1979-03-05T00:00:00Z",
    center="JPL",
    nasa_id="PIA00001",
    thumbnail_url="https://images-assets.nasa.gov/thumb.jpg",
    canonical_url="https://images.nasa.gov/details/PIA00001",
)


def _texts(document) -> list[str]:
    return [b["text"]["text"] for b in document.to_blocks() if b["type"] == "section"]


def _types(document) -> list[str]:
    return [b["type"] for b in document.to_blocks()]


class TestHeaderAndSnippet:
    def test_no_links_only_header_and_snippet(self):
        document = compose_notification(PR, extract_links("Fix loop\n\n"), None, None, False)
        assert _types(document) == ["section", "divider", "section"]
        header = _texts(document)[0]
        assert "*PR:* <https://github.com/o/r/pull/7|Fix loop>" in header
        assert "*Author:* octocat" in header
        assert "*Branch:* `feature` → `main`" in header

    def test_fallback_text_embeds_title_only(self):
        document = compose_notification(PR, DetectedLinks(), None, None, True)
        assert document.fallback_text == "PR: Fix loop"

    def test_snippet_masked_when_secret_configured(self):
        document = compose_notification(PR, DetectedLinks(), None, None, True)
        snippet = _texts(document)[-1]
        assert snippet.startswith("*SoundCloud WebSocket snippet (masked token):*")
        assert f"token={MASKED_TOKEN}'" in snippet
        assert "`SC_WS_TOKEN`" in snippet

    def test_snippet_skipped_without_secret(self):
        document = compose_notification(PR, DetectedLinks(), None, None, False)
        snippet = _texts(document)[-1]
        assert "_No SC WebSocket token provided; skipping snippet._" in snippet
        assert MASKED_TOKEN not in snippet
        assert "```" not in snippet

    def test_build_snippet_uses_eight_mask_characters(self):
        assert MASKED_TOKEN == "********"
        assert MASKED_TOKEN in build_snippet(True)
        assert MASKED_TOKEN not in build_snippet(False)


class TestSoundCloudSection:
    def test_resolved_with_platform(self):
        links = extract_links("check https://soundcloud.com/x/y")
        result = UniversalLinkResult(
            canonical_url="https://song.link/abc",
            platform_links=(("Spotify", "https://s.example"),),
        )
        document = compose_notification(PR, links, result, None, False)
        texts = _texts(document)
        full_text = "\n".join(texts)
        assert "https://soundcloud.com/x/y" in texts[1]
        assert "*Songlink:* <https://song.link/abc|Open universal link>" in texts[1]
        assert texts[2] == "• *Spotify:* <https://s.example|open>"
        assert full_text.count("• ") == 1
        assert _types(document) == [
            "section",
            "divider",
            "section",
            "section",
            "divider",
            "section",
        ]

    def test_resolved_without_platforms_has_no_bullets(self):
        links = extract_links("https://soundcloud.com/x/y")
        result = UniversalLinkResult(canonical_url="https://song.link/abc")
        document = compose_notification(PR, links, result, None, False)
        assert "• " not in "\n".join(_texts(document))
        assert _types(document) == ["section", "divider", "section", "divider", "section"]

    def test_unresolved_hides_platform_links(self):
        links = extract_links("https://soundcloud.com/x/y")
        result = UniversalLinkResult(platform_links=(("Spotify", "https://s.example"),))
        document = compose_notification(PR, links, result, None, False)
        full_text = "\n".join(_texts(document))
        assert "could not be resolved" in full_text
        assert "• " not in full_text
        assert "https://s.example" not in full_text

    def test_missing_result_renders_unresolved(self):
        links = extract_links("https://soundcloud.com/x/y")
        document = compose_notification(PR, links, None, None, False)
        assert "_Songlink could not be resolved_" in _texts(document)[1]


class TestNasaSection:
    def test_card_with_thumbnail(self):
        links = extract_links("https://images.nasa.gov/details/PIA00001")
        document = compose_notification(PR, links, None, CARD, False)
        block = document.to_blocks()[2]
        assert block["type"] == "section"
        assert "*Title:* Jupiter" in block["text"]["text"]
        assert "*Date:* 1979-03-05T00:00:00Z" in block["text"]["text"]
        assert "*Center:* JPL" in block["text"]["text"]
        assert (
            "<https://images.nasa.gov/details/PIA00001|Open on images.nasa.gov>"
            in block["text"]["text"]
        )
        assert block["accessory"] == {
            "type": "image",
            "image_url": "https://images-assets.nasa.gov/thumb.jpg",
            "alt_text": "NASA media thumbnail",
        }

    def test_card_without_thumbnail_omits_image(self):
        card = CARD.model_copy(update={"thumbnail_url": None})
        links = extract_links("https://images.nasa.gov/details/PIA00001")
        document = compose_notification(PR, links, None, card, False)
        block = document.to_blocks()[2]
        assert "accessory" not in block
        assert "*Title:* Jupiter" in block["text"]["text"]

    def test_no_card_omits_section(self):
        links = extract_links("https://images.nasa.gov/details/PIA00001")
        document = compose_notification(PR, links, None, None, False)
        assert "NASA Media" not in "\n".join(_texts(document))
        assert _types(document) == ["section", "divider", "section"]

    def test_empty_id_link_omits_section(self):
        links = extract_links("https://images.nasa.gov/details/")
        document = compose_notification(PR, links, None, None, False)
        assert _types(document) == ["section", "divider", "section"]


class TestYouTubeSection:
    def test_raw_url_line(self):
        links = extract_links("https://youtu.be/abc123")
        document = compose_notification(PR, links, None, None, False)
        assert _texts(document)[1] == "*YouTube:* https://youtu.be/abc123"


class TestOrderingAndPurity:
    def test_section_order(self):
        links = extract_links(
            "https://youtu.be/abc https://images.nasa.gov/details/PIA00001 "
            "https://soundcloud.com/x/y",
        )
        result = UniversalLinkResult(canonical_url="https://song.link/abc")
        document = compose_notification(PR, links, result, CARD, True)
        texts = _texts(document)
        assert texts[0].startswith("*PR:*")
        assert texts[1].startswith("*Detected SoundCloud URL:*")
        assert texts[2].startswith("*NASA Media:*")
        assert texts[3].startswith("*YouTube:*")
        assert texts[4].startswith("*SoundCloud WebSocket snippet")

    def test_repeated_composition_is_identical(self):
        links = extract_links("https://soundcloud.com/x/y https://youtu.be/abc")
        result = UniversalLinkResult(
            canonical_url="https://song.link/abc",
            platform_links=(("Spotify", "https://s.example"),),
        )
        first = compose_notification(PR, links, result, CARD, True)
        second = compose_notification(PR, links, result, CARD, True)
        assert first == second
        assert first.model_dump_json() == second.model_dump_json()

    def test_payload_shape(self):
        document = compose_notification(PR, DetectedLinks(), None, None, False)
        payload = document.to_payload("C123")
        assert payload["channel"] == "C123"
        assert payload["text"] == "PR: Fix loop"
        assert payload["blocks"] == document.to_blocks()


class TestEscaping:
    def test_title_and_author_escaped_in_header(self):
        pr = PR.model_copy(update={"title": "A <b> & C > D", "author": "<bot>"})
        document = compose_notification(pr, DetectedLinks(), None, None, False)
        header = _texts(document)[0]
        assert "<https://github.com/o/r/pull/7|A &lt;b&gt; &amp; C &gt; D>" in header
        assert "*Author:* &lt;bot&gt;" in header
        assert document.fallback_text == "PR: A &lt;b&gt; &amp; C &gt; D"

    def test_nasa_fields_escaped(self):
        card = CARD.model_copy(update={"title": "Earth <rise>", "center": "JSC & KSC"})
        links = extract_links("https://images.nasa.gov/details/PIA00001")
        document = compose_notification(PR, links, None, card, False)
        text = document.to_blocks()[2]["text"]["text"]
        assert "*Title:* Earth &lt;rise&gt;" in text
        assert "*Center:* JSC &amp; KSC" in text
        assert "<https://images.nasa.gov/details/PIA00001|Open on images.nasa.gov>" in text
