from deobf_service.bot import messages


def _result(**overrides) -> dict:
    result = {
        "source_filename": "obf.lua",
        "original_size": 2048,
        "output_size": 4096,
        "elapsed_sec": 1.234,
        "remaining_balance": 2,
        "links": [],
    }
    result.update(overrides)
    return result


def test_success_text_without_links() -> None:
    text = messages.success_text(_result())
    assert "Original size: 2.00 KB" in text
    assert "Deobfuscated size: 4.00 KB" in text
    assert "Processing time: 1.23s" in text
    assert "Tokens left: 2" in text
    assert "Found links" not in text


def test_success_text_lists_links() -> None:
    text = messages.success_text(_result(links=["https://b.example", "https://a.example"]))
    assert text.endswith("https://a.example\nhttps://b.example")


def test_success_text_is_bounded() -> None:
    links = [f"https://example.org/{i:05d}" for i in range(2000)]
    assert len(messages.success_text(_result(links=links))) <= messages.MAX_MESSAGE_CHARS


def test_failure_text_for_tool_errors() -> None:
    assert "Moonsec V3" in messages.failure_text("TOOL_ERROR")
    assert "No token was charged" in messages.failure_text("TOOL_TIMEOUT")
    assert "(UNKNOWN_ERROR)" in messages.failure_text("UNKNOWN_ERROR")


def test_too_large_text() -> None:
    assert "30.00 MB" in messages.too_large_text(30 * 1024 * 1024, 25 * 1024 * 1024)
