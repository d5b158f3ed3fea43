from deobf_service.links import format_links

# Telegram caps messages at 4096 characters.
MAX_MESSAGE_CHARS = 4096
MAX_LINKS_CHARS = 1500


def kb(size: int) -> str:
    return f"{size / 1024:.2f} KB"


def mb(size: int) -> str:
    return f"{size / 1024 / 1024:.2f} MB"


def welcome_text(daily_amount: int, extensions: list[str]) -> str:
    return (
        "Send a Moonsec V3 obfuscated file as a document to deobfuscate it.\n"
        f"Accepted types: {', '.join(extensions)}\n"
        f"Each file costs 1 token. You get {daily_amount} free tokens every 24 hours.\n\n"
        "Commands: /balance /gift <user_id> <amount>"
    )


def too_large_text(size: int, max_bytes: int) -> str:
    return f"File too large: {mb(size)}\nMaximum allowed: {mb(max_bytes)}\n\nPlease upload a smaller file."


def invalid_type_text(ext: str, extensions: list[str]) -> str:
    return f"Invalid file type: {ext or 'unknown'}\nAccepted types: {', '.join(extensions)}"


def insufficient_text(daily_amount: int) -> str:
    return f"You have 0 tokens. You get {daily_amount} free tokens every 24 hours. Come back tomorrow!"


def processing_text(filename: str, size: int) -> str:
    return f"Processing your file...\nFile: {filename}\nSize: {kb(size)}"


def failure_text(code: str) -> str:
    if code in {"TOOL_ERROR", "TOOL_TIMEOUT", "TRANSFORM_ERROR"}:
        return (
            "Deobfuscation failed.\n"
            "Only Moonsec V3 is supported. Make sure you're uploading a valid Moonsec V3 obfuscated file.\n"
            "No token was charged."
        )
    return f"Deobfuscation failed ({code}). No token was charged."


def success_text(result: dict) -> str:
    lines = [
        f"Deobfuscation complete: {result['source_filename']}",
        f"Original size: {kb(result['original_size'])}",
        f"Deobfuscated size: {kb(result['output_size'])}",
        f"Processing time: {result['elapsed_sec']:.2f}s",
        f"Tokens left: {result['remaining_balance']}",
    ]
    links = result.get("links") or []
    if links:
        lines.append("")
        lines.append("Found links:")
        lines.append(format_links(set(links), MAX_LINKS_CHARS))
    return "\n".join(lines)[:MAX_MESSAGE_CHARS]


def gift_text(amount: int, target_user_id: str, balance: int) -> str:
    return f"Gifted {amount} tokens to {target_user_id}\nNew balance: {balance} tokens"
