import base64
import logging
from pathlib import Path

import httpx
from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.error import TelegramError
from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters

from deobf_service.bot import messages
from deobf_service.config import settings
from deobf_service.downloader import fetch_bytes
from deobf_service.errors import DownloadError
from deobf_service.roles import roles_for_user

logger = logging.getLogger(__name__)


def _error_detail(r: httpx.Response) -> tuple[str, str]:
    try:
        detail = r.json().get("detail")
    except ValueError:
        return "UNKNOWN_ERROR", r.text[:300]
    if isinstance(detail, dict):
        return str(detail.get("code", "UNKNOWN_ERROR")), str(detail.get("message", ""))
    return "UNKNOWN_ERROR", str(detail)[:300]


async def _get_balance(user_id: int) -> int:
    async with httpx.AsyncClient(timeout=30) as client:
        r = await client.get(f"{settings.api_base_url}/v1/credits/{user_id}")
        r.raise_for_status()
        return int(r.json()["data"]["balance"]["balance"])


async def start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await update.message.reply_text(messages.welcome_text(settings.daily_claim_amount, settings.extension_list))


async def balance(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.effective_user:
        return
    bal = await _get_balance(update.effective_user.id)
    await update.message.reply_text(f"You have {bal} tokens.")


async def gift(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.effective_user:
        return
    if not roles_for_user(update.effective_user.id, settings).has_role(settings.gift_role_id):
        await update.message.reply_text("Access denied: you do not have permission to gift tokens.")
        return

    if not context.args or len(context.args) != 2:
        await update.message.reply_text("Usage: /gift <user_id> <amount>")
        return
    target, raw_amount = context.args
    try:
        amount = int(raw_amount)
    except ValueError:
        amount = 0
    if amount < 1:
        await update.message.reply_text("Amount must be a positive whole number.")
        return

    async with httpx.AsyncClient(timeout=30) as client:
        r = await client.post(
            f"{settings.api_base_url}/v1/admin/credits/grant",
            json={"user_id": target, "amount": amount, "note": f"gift from {update.effective_user.id}"},
            headers={"x-admin-token": settings.admin_api_token},
        )
    if r.status_code >= 400:
        logger.error("Gift to %s failed: %s %s", target, r.status_code, r.text[:300])
        await update.message.reply_text("Failed to gift tokens.")
        return

    new_balance = int(r.json()["data"]["balance"])
    logger.info("[GIFT] %s gifted %d tokens to %s", update.effective_user.id, amount, target)
    await update.message.reply_text(messages.gift_text(amount, target, new_balance))


async def handle_document(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not update.message.document or not update.effective_user:
        return

    document = update.message.document
    filename = document.file_name or "upload"
    ext = Path(filename).suffix.lower()
    if ext not in settings.extension_list:
        await update.message.reply_text(messages.invalid_type_text(ext, settings.extension_list))
        return
    if document.file_size and document.file_size > settings.max_file_bytes:
        await update.message.reply_text(messages.too_large_text(document.file_size, settings.max_file_bytes))
        return

    status_msg = await update.message.reply_text(messages.processing_text(filename, document.file_size or 0))

    try:
        tg_file = await document.get_file()
        data = await fetch_bytes(tg_file.file_path, settings.max_file_bytes)
    except (DownloadError, TelegramError):
        logger.exception("Failed to download %s for user %s", filename, update.effective_user.id)
        await status_msg.edit_text("Could not download your file. Please try again.")
        return

    async with httpx.AsyncClient(timeout=settings.transform_timeout_sec + 60) as client:
        r = await client.post(
            f"{settings.api_base_url}/v1/jobs",
            files={"file": (filename, data, "text/plain")},
            data={"user_id": str(update.effective_user.id)},
        )

    if r.status_code == 402:
        await status_msg.edit_text(messages.insufficient_text(settings.daily_claim_amount))
        return
    if r.status_code == 400:
        _, message = _error_detail(r)
        await status_msg.edit_text(message or "Invalid file.")
        return
    if r.status_code >= 400:
        code, message = _error_detail(r)
        logger.warning("Job for %s failed: %s %s", filename, code, message)
        await status_msg.edit_text(messages.failure_text(code))
        return

    result = r.json()["data"]
    button = InlineKeyboardButton("Decompile The Output Code", url=settings.decompile_url)
    await update.message.reply_document(
        document=base64.b64decode(result["output_b64"]),
        filename=result["output_filename"],
        reply_markup=InlineKeyboardMarkup([[button]]),
    )
    await status_msg.edit_text(messages.success_text(result))
    logger.info("[%s] Delivered %s to user %s", result["request_id"], result["output_filename"], update.effective_user.id)


def main() -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    if not settings.telegram_bot_token:
        raise RuntimeError("TELEGRAM_BOT_TOKEN is not set")

    app = Application.builder().token(settings.telegram_bot_token).build()
    app.add_handler(CommandHandler("start", start))
    app.add_handler(CommandHandler("balance", balance))
    app.add_handler(CommandHandler("gift", gift))
    app.add_handler(MessageHandler(filters.Document.ALL, handle_document))
    logger.info("Bot starting, API at %s", settings.api_base_url)
    app.run_polling()


if __name__ == "__main__":
    main()
