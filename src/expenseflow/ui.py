from __future__ import annotations

from html import escape
from typing import Mapping, Optional


def render_notification_email(title: str, message: str, link: Optional[str] = None, action: str = "view") -> str:
    body = f"<h2>{escape(title)}</h2><p>{escape(message)}</p>"
    if link:
        body += f'<p>Click <a href="{escape(link, quote=True)}">here</a> to {escape(action)} the expense.</p>'
    return f'<section class="notification">{body}</section>'


def render_validation_summary(errors: Mapping[str, str]) -> str:
    if not errors:
        return (
            '<section class="validation-summary success">'
            "<h2>Validation Summary</h2>"
            "<p>Ready to submit</p>"
            "</section>"
        )

    items = "".join(
        f"<li><strong>{escape(path)}</strong>: {escape(message)}</li>" for path, message in errors.items()
    )
    return (
        '<section class="validation-summary error">'
        "<h2>Validation Summary</h2>"
        "<p>Fix the fields below before submitting the expense.</p>"
        f"<ul>{items}</ul>"
        "</section>"
    )
