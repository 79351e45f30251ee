from feishubridge.runtime.context_cache import ConversationCache


def test_disabled_cache_is_a_noop() -> None:
    cache = ConversationCache(enabled=False)
    cache.append("oc_1", "text", text="hello")
    assert cache.items("oc_1") == []
    assert cache.summarize("oc_1") == ""


def test_ring_buffer_keeps_newest() -> None:
    cache = ConversationCache(enabled=True, max_items=3)
    for i in range(5):
        cache.append("oc_1", "text", text=f"m{i}")
    assert [it.text for it in cache.items("oc_1")] == ["m2", "m3", "m4"]


def test_text_is_trimmed_and_capped() -> None:
    cache = ConversationCache(enabled=True)
    cache.append("oc_1", "text", text="  " + "x" * 1000 + "  ")
    assert cache.items("oc_1")[0].text == "x" * 800


def test_summary_format() -> None:
    cache = ConversationCache(enabled=True)
    cache.append("oc_1", "text", text="look at this")
    cache.append("oc_1", "file", name="report.pdf", path="/tmp/report.pdf")
    cache.append("oc_1", "image")

    assert cache.summarize("oc_1") == "\n".join(
        [
            "[group_cache:last_messages]",
            "- [text] look at this",
            "- [file] report.pdf",
            "- [image] (image)",
            "[/group_cache]",
        ]
    )


def test_summary_uses_last_twenty_items() -> None:
    cache = ConversationCache(enabled=True, max_items=50)
    for i in range(30):
        cache.append("oc_1", "text", text=f"m{i}")

    lines = cache.summarize("oc_1").splitlines()
    assert lines[1] == "- [text] m10"
    assert len(lines) == 22
    assert cache.summarize("oc_other") == ""
