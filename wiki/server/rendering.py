"""Markdown rendering for page payloads and the app.markdown bus address."""

import markdown

from wikisdk.bus import Message


def renderMarkdown(text: str) -> str:
    """Raw page markdown to HTML"""
    return markdown.markdown(text or '')


def handleMarkdownMessage(message: Message):
    """Bus consumer: reply with the HTML rendering of a markdown string body"""
    if not isinstance(message.body, str):
        message.fail(400, "Markdown body must be a string")
        return
    message.reply(renderMarkdown(message.body))
