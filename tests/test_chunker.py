"""Tests for the content chunker."""

from app.features.knowledge.chunker import (
    chunk_document_content,
    chunk_text,
    chunk_website_content,
    content_hash,
    extract_headings,
    extract_keywords,
    is_low_quality,
)


HOURS = (
    "Our store opens at nine in the morning on weekdays. On Saturdays we open at ten and close early at four. "
    "Sundays and public holidays the store stays closed all day. During December opening hours are extended "
    "until eight every evening."
)
PRICING = (
    "Pricing starts with the free plan for small teams. The pro plan costs twenty dollars per seat each month. "
    "Enterprise customers get volume discounts and invoicing."
)


def _paragraphs(count: int, words: int = 40) -> str:
    return "\n\n".join(
        " ".join(f"topic{p}word{w}" for w in range(words)) + "." for p in range(count)
    )


def test_empty_input_gives_no_chunks():
    assert chunk_text("") == []
    assert chunk_text("   \n\n\t  ") == []


def test_short_input_gives_single_chunk():
    chunks = chunk_text("We are open from 9 to 5.", max_size=800, min_size=200, overlap=100)
    assert len(chunks) == 1
    assert chunks[0]["content"] == "We are open from 9 to 5."
    assert chunks[0]["chunk_index"] == 0
    assert chunks[0]["content_hash"] == content_hash("We are open from 9 to 5.")


def test_chunks_respect_max_size():
    text = _paragraphs(12)
    chunks = chunk_text(text, max_size=400, min_size=100, overlap=50)
    assert len(chunks) > 1
    assert all(len(c["content"]) <= 400 for c in chunks)
    assert [c["chunk_index"] for c in chunks] == list(range(len(chunks)))


def test_chunking_is_deterministic():
    text = _paragraphs(10)
    first = chunk_text(text, max_size=300, min_size=100, overlap=60)
    second = chunk_text(text, max_size=300, min_size=100, overlap=60)
    assert [c["content_hash"] for c in first] == [c["content_hash"] for c in second]


def test_hash_changes_only_with_text():
    assert content_hash("hello") == content_hash("hello")
    assert content_hash("hello") != content_hash("hello!")


def test_paragraph_breaks_preferred_over_mid_sentence():
    chunks = chunk_text(f"{HOURS}\n\n{PRICING}", max_size=250, min_size=10, overlap=0)
    assert [c["content"] for c in chunks] == [HOURS, PRICING]


def test_long_word_is_cut():
    chunks = chunk_text("x" * 250, max_size=100, min_size=10, overlap=0)
    assert [len(c["content"]) for c in chunks] == [100, 100, 50]


def test_overlap_carries_words_into_next_chunk():
    text = " ".join(f"word{i}." for i in range(200))
    chunks = chunk_text(text, max_size=200, min_size=10, overlap=40)
    assert len(chunks) > 1
    tail_word = chunks[0]["content"].split()[-1]
    assert tail_word in chunks[1]["content"].split()


def test_small_final_chunk_stays_when_merge_would_overflow():
    text = ("a" * 180) + "\n\n" + ("b" * 30)
    chunks = chunk_text(text, max_size=200, min_size=50, overlap=0)
    assert [c["content"] for c in chunks] == ["a" * 180, "b" * 30]


def test_low_quality_chunks_are_dropped_and_reindexed():
    spam = " ".join(["buy"] * 100)
    text = f"{HOURS}\n\n{spam}\n\n{PRICING}"
    chunks = chunk_text(text, max_size=400, min_size=10, overlap=0)
    assert [c["content"] for c in chunks] == [HOURS, PRICING]
    assert [c["chunk_index"] for c in chunks] == [0, 1]


def test_single_chunk_is_never_filtered():
    spam = " ".join(["buy"] * 20)
    assert len(chunk_text(spam, max_size=400, min_size=10, overlap=0)) == 1


def test_is_low_quality_detects_forms():
    form = "Required fields are marked. Confirm password. Privacy policy. Submit"
    assert is_low_quality(form)
    assert not is_low_quality(HOURS)


def test_metadata_headings_and_keywords():
    text = '# Pricing\n\nThe "Pro Plan" includes API access and Single Sign-On for Acme Corp teams.'
    assert extract_headings(text) == ["Pricing"]
    keywords = extract_keywords(text)
    assert "API" in keywords
    assert len(keywords) <= 20


def test_website_and_document_wrappers_add_metadata():
    page = chunk_website_content("https://acme.example/hours", "Open 9 to 5.", "Hours")
    assert page[0]["metadata"]["url"] == "https://acme.example/hours"
    assert page[0]["metadata"]["title"] == "Hours"

    doc = chunk_document_content("faq.pdf", "Returns are accepted within 30 days.")
    assert doc[0]["metadata"]["document"] == "faq.pdf"
