#!/usr/bin/env python3
"""
Taskboard Bot
─────────────
Telegram chat surface for a board session. Plain text goes through the
intent bridge (create / find / update / delete / move tasks in natural
language); commands cover what the assistant must not do on its own.

Commands:
    /board           show the open board
    /boards          list boards
    /open <title>    open a board by title
    /newboard <t>    create a board
    /deleteboard     delete the open board (asks for its exact title)
    /cancel          abort a pending deletion
    /help            show this message

Dependencies:
    pip install python-telegram-bot==21.* pyyaml

Usage:
    export TASKBOARD_BOT_TOKEN=...
    python bots/board_bot.py --config config/taskboard.yaml
"""

import logging
import sys

from telegram import BotCommand, Update
from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters

from taskboard.config import TaskboardConfig, setup_logging
from taskboard.errors import ConfigError
from taskboard.session import BoardSession

logger = logging.getLogger(__name__)


def truncate(text: str, max_chars: int = 3500) -> str:
    """Truncate text to fit in a single Telegram message (4096 char limit)."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + f"\n…[truncated, {len(text) - max_chars} chars omitted]"


def format_board(session: BoardSession, max_tasks: int = 15) -> str:
    """Plain-text rendering of the open board."""
    board = session.board
    if board is None:
        return "No board open. Use /boards and /open <title>."
    lines = [f"📋 {board.title}"]
    for column in session.board_state.columns:
        lines.append(f"\n{column.title} ({len(column.tasks)})")
        for task in column.tasks[:max_tasks]:
            suffix = f" @{task.assignee}" if task.assignee else ""
            tags = f" [{', '.join(t.name for t in task.tags)}]" if task.tags else ""
            lines.append(f"  • {task.title}{suffix}{tags}")
        if len(column.tasks) > max_tasks:
            lines.append(f"  … {len(column.tasks) - max_tasks} more")
    return truncate("\n".join(lines))


def format_operation(operation: dict) -> str:
    """One-line summary of what the assistant did."""
    if not operation:
        return ""
    kind = operation.get("type")
    details = operation.get("details", {})
    icon = "✅" if operation.get("success") else "❌"
    if kind == "create":
        return f"{icon} Created \"{details.get('title')}\" in {details.get('columnTitle')}"
    if kind == "update":
        return f"{icon} Updated \"{details.get('taskTitle')}\""
    if kind == "delete":
        return f"{icon} Deleted \"{details.get('taskTitle')}\""
    if kind == "move":
        return (f"{icon} Moved \"{details.get('taskTitle')}\" "
                f"{details.get('sourceColumn')} → {details.get('targetColumn')}")
    if kind == "query":
        results = operation.get("results", [])
        lines = [f"🔎 Found {len(results)} task(s)"]
        for task in results[:5]:
            lines.append(f"  • {task['title']} ({task['columnTitle']})")
        if len(results) > 5:
            lines.append(f"  And {len(results) - 5} more task(s)...")
        return "\n".join(lines)
    return ""


class BoardBot:
    """Telegram front end for one BoardSession."""

    def __init__(self, cfg: TaskboardConfig, session: BoardSession):
        self.cfg = cfg
        self.session = session
        # user_id → board_id awaiting title confirmation
        self._pending_deletes: dict[int, str] = {}

    # ──────────────────────────────────────────
    # Auth
    # ──────────────────────────────────────────

    def _is_authorized(self, update: Update) -> bool:
        return self.cfg.is_authorized(update.effective_user.id)

    async def _reject_unauthorized(self, update: Update):
        user = update.effective_user
        logger.warning(f"Unauthorized access attempt: user_id={user.id}, username={user.username}")
        await update.message.reply_text("⛔ Unauthorized.")

    # ──────────────────────────────────────────
    # Commands
    # ──────────────────────────────────────────

    async def handle_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        await update.message.reply_text(
            "Talk to me in plain language, e.g. \"add a task to fix login in To Do\".\n\n"
            "/board — show the open board\n"
            "/boards — list boards\n"
            "/open <title> — open a board\n"
            "/newboard <title> — create a board\n"
            "/deleteboard — delete the open board\n"
            "/cancel — cancel a pending deletion"
        )

    async def handle_board(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /board: show the open board."""
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        if self.session.board is None:
            await self.session.open_board()
        await update.message.reply_text(format_board(self.session))

    async def handle_boards(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /boards: list boards, most recent first."""
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        boards = await self.session.board_engine.fetch_user_boards()
        if boards is None:
            await update.message.reply_text(f"❌ {self.session.board_state.error}")
            return
        if not boards:
            await update.message.reply_text("No boards yet. Create one with /newboard <title>.")
            return
        current = self.session.board.id if self.session.board else None
        lines = [("▶ " if b.id == current else "• ") + b.title for b in boards]
        await update.message.reply_text("\n".join(lines))

    async def handle_open(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /open <title>: switch to another board."""
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        title = " ".join(context.args or []).strip()
        if not title:
            await update.message.reply_text("Usage: /open <board title>")
            return
        if not self.session.board_state.boards:
            await self.session.board_engine.fetch_user_boards()
        match = next((b for b in self.session.board_state.boards if b.title.lower() == title.lower()), None)
        if match is None:
            await update.message.reply_text(f"No board named \"{title}\".")
            return
        if await self.session.open_board(match.id) is None:
            await update.message.reply_text(f"❌ {self.session.board_state.error}")
            return
        await update.message.reply_text(format_board(self.session))

    async def handle_newboard(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /newboard <title>."""
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        title = " ".join(context.args or []).strip()
        if not title:
            await update.message.reply_text("Usage: /newboard <title>")
            return
        board = await self.session.board_engine.add_board(title)
        if board is None:
            await update.message.reply_text(f"❌ {self.session.board_state.error}")
            return
        await self.session.open_board(board.id)
        await update.message.reply_text(f"✅ Created board \"{board.title}\".\n\n{format_board(self.session)}")

    async def handle_deleteboard(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /deleteboard: hold the deletion until the title is typed back."""
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        board = self.session.board
        if board is None:
            await update.message.reply_text("No board open.")
            return
        self._pending_deletes[update.effective_user.id] = board.id
        await update.message.reply_text(
            f"⚠️ This deletes \"{board.title}\" with all its columns, tasks and tags.\n"
            f"Type the board title exactly to confirm, or /cancel."
        )

    async def handle_cancel(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /cancel: discard a pending deletion."""
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        if self._pending_deletes.pop(update.effective_user.id, None) is None:
            await update.message.reply_text("ℹ️ Nothing pending to cancel.")
            return
        await update.message.reply_text("❌ Deletion cancelled.")

    # ──────────────────────────────────────────
    # Plain text
    # ──────────────────────────────────────────

    async def handle_text(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        user_id = update.effective_user.id
        text = (update.message.text or "").strip()
        if not text:
            return

        if user_id in self._pending_deletes:
            await self._confirm_delete(update, self._pending_deletes.pop(user_id), text)
            return

        if self.session.board is None:
            await self.session.open_board()
        try:
            result = await self.session.chat(text)
        except ConfigError as e:
            await update.message.reply_text(f"⚠️ {e}")
            return
        except Exception as e:
            logger.error(f"Error processing chat message: {e}")
            await update.message.reply_text(
                "Sorry, I encountered an error processing your request. Please try again."
            )
            return

        parts = [result.response] if result.response else []
        summary = format_operation(result.operation)
        if summary:
            parts.append(summary)
        if result.operation and not result.operation.get("success") and self.session.board_state.error:
            parts.append(self.session.board_state.error)
        if result.suggestions:
            parts.append("💡 " + " · ".join(result.suggestions[:3]))
        await update.message.reply_text(truncate("\n\n".join(parts) or "🤔 I'm not sure what to do."))

    async def _confirm_delete(self, update: Update, board_id: str, text: str):
        board = self.session.board
        title = board.title if board is not None and board.id == board_id else ""
        ok = await self.session.delete_board(board_id, text)
        if ok:
            await update.message.reply_text(f"🗑 Deleted board \"{title}\".")
            return
        await update.message.reply_text(f"❌ {self.session.board_state.error or 'Board not deleted.'}")

    # ──────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────

    def register_handlers(self, app: Application):
        app.add_handler(CommandHandler("help", self.handle_help))
        app.add_handler(CommandHandler("start", self.handle_help))
        app.add_handler(CommandHandler("board", self.handle_board))
        app.add_handler(CommandHandler("boards", self.handle_boards))
        app.add_handler(CommandHandler("open", self.handle_open))
        app.add_handler(CommandHandler("newboard", self.handle_newboard))
        app.add_handler(CommandHandler("deleteboard", self.handle_deleteboard))
        app.add_handler(CommandHandler("cancel", self.handle_cancel))
        app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self.handle_text))

    async def set_bot_commands(self, app: Application):
        """Set command suggestions in Telegram UI (autocomplete menu)."""
        await app.bot.set_my_commands([
            BotCommand("board", "Show the open board"),
            BotCommand("boards", "List boards"),
            BotCommand("open", "Open a board by title"),
            BotCommand("newboard", "Create a board"),
            BotCommand("deleteboard", "Delete the open board"),
            BotCommand("cancel", "Cancel a pending deletion"),
            BotCommand("help", "Show help"),
        ])

    def run(self):
        """Build Telegram Application, register handlers, and start polling."""
        app = Application.builder().token(self.cfg.telegram_token()).build()
        self.register_handlers(app)

        async def post_init(application):
            await self.set_bot_commands(application)
            await self.session.open_board()

        async def post_shutdown(application):
            await self.session.close()

        app.post_init = post_init
        app.post_shutdown = post_shutdown
        logger.info("Starting taskboard bot…")
        app.run_polling(drop_pending_updates=True)


def main():
    import argparse

    parser = argparse.ArgumentParser(description="Taskboard Telegram bot")
    parser.add_argument("--config", help="Path to taskboard.yaml")
    args = parser.parse_args()

    cfg = TaskboardConfig.load(args.config)
    setup_logging(cfg.log_level, "board-bot")
    try:
        cfg.telegram_token()
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)
    BoardBot(cfg, BoardSession.from_config(cfg)).run()


if __name__ == "__main__":
    main()
