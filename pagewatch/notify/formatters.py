"""Platform-specific message formatters for change notifications.

Provides formatters for:
- Discord (embed format)
- Telegram (Markdown)
- Slack (Block Kit)
- Generic (JSON)
- Plain text / HTML bodies
"""

import html
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pagewatch.utils.clock import utcnow

MODE_LABELS = {
    "text": "Text change",
    "visual": "Visual change",
    "price": "Price change",
}


@dataclass
class NotificationArtifact:
    """Everything a channel needs to describe one detected change."""

    target_id: int
    target_name: str
    url: str
    mode: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    diff_text: Optional[str] = None
    diff_png: Optional[bytes] = None
    ai_summary: Optional[str] = None
    price: Optional[Decimal] = None
    currency: Optional[str] = None
    diff_pixels: Optional[int] = None
    detected_at: datetime = field(default_factory=utcnow)


def build_subject(artifact: NotificationArtifact) -> str:
    label = MODE_LABELS.get(artifact.mode, "Change")
    return f"{label}: {artifact.target_name}"


def _summary_line(artifact: NotificationArtifact) -> str:
    if artifact.ai_summary:
        return artifact.ai_summary
    if artifact.mode == "price" and artifact.price is not None:
        return f"Price is now {artifact.price:.2f} {artifact.currency or ''}".strip()
    if artifact.mode == "visual":
        if artifact.diff_pixels:
            return f"{artifact.diff_pixels} pixels changed"
        return "The page looks different"
    return "The monitored content changed"


def build_plain_body(artifact: NotificationArtifact) -> str:
    """Plain-text body used by chat channels and the generic webhook."""
    lines = [
        build_subject(artifact),
        artifact.url,
        "",
        _summary_line(artifact),
    ]
    if artifact.mode != "visual" and (artifact.old_value or artifact.new_value):
        lines.extend([
            "",
            f"Before: {(artifact.old_value or '')[:300]}",
            f"After: {(artifact.new_value or '')[:300]}",
        ])
    if artifact.diff_text and artifact.mode == "text":
        lines.extend(["", artifact.diff_text])
    return "\n".join(lines)


def build_html_body(artifact: NotificationArtifact) -> str:
    """Minimal HTML body for channels that render markup."""
    parts = [
        f"<h3>{html.escape(build_subject(artifact))}</h3>",
        f'<p><a href="{html.escape(artifact.url, quote=True)}">{html.escape(artifact.url)}</a></p>',
        f"<p>{html.escape(_summary_line(artifact))}</p>",
    ]
    if artifact.diff_text and artifact.mode == "text":
        parts.append(f"<pre>{html.escape(artifact.diff_text)}</pre>")
    return "\n".join(parts)


def format_discord_embed(artifact: NotificationArtifact, has_image: bool = False) -> Dict[str, Any]:
    """
    Format a change as a Discord webhook payload.

    Args:
        artifact: Change details
        has_image: Reference the attached diff image from the embed

    Returns:
        Discord webhook payload
    """
    color = {"price": 0x00FF00, "visual": 0xFFA500}.get(artifact.mode, 0x3498DB)

    fields = []
    if artifact.mode == "price" and artifact.price is not None:
        fields.append({
            "name": "Current Price",
            "value": f"{artifact.price:.2f} {artifact.currency or ''}".strip(),
            "inline": True,
        })
        if artifact.old_value:
            fields.append({"name": "Was", "value": artifact.old_value[:100], "inline": True})
    elif artifact.mode == "text" and artifact.diff_text:
        fields.append({
            "name": "Diff",
            "value": f"```diff\n{artifact.diff_text[:1000]}\n```",
            "inline": False,
        })
    elif artifact.mode == "visual" and artifact.diff_pixels is not None:
        fields.append({"name": "Changed pixels", "value": str(artifact.diff_pixels), "inline": True})

    embed = {
        "title": build_subject(artifact)[:256],
        "url": artifact.url,
        "description": _summary_line(artifact)[:2000],
        "color": color,
        "fields": fields,
        "footer": {"text": f"Monitor #{artifact.target_id}"},
        "timestamp": artifact.detected_at.isoformat(),
    }
    if has_image:
        embed["image"] = {"url": "attachment://diff.png"}

    return {
        "embeds": [embed],
        "username": "PageWatch",
    }


def _escape_markdown(text: str) -> str:
    """Escape Telegram Markdown special characters."""
    for char in ["_", "*", "[", "]", "`"]:
        text = text.replace(char, f"\\{char}")
    return text


def format_telegram_message(artifact: NotificationArtifact) -> str:
    """Format a change as a Telegram Markdown message."""
    lines = [
        f"*{_escape_markdown(build_subject(artifact))}*",
        "",
        _escape_markdown(_summary_line(artifact)),
    ]
    if artifact.mode == "text" and artifact.diff_text:
        lines.extend(["", f"```\n{artifact.diff_text[:3000]}\n```"])
    lines.extend(["", f"[Open page]({artifact.url})"])
    return "\n".join(lines)


def format_slack_blocks(artifact: NotificationArtifact) -> Dict[str, Any]:
    """Format a change as a Slack Block Kit message."""
    blocks = [
        {
            "type": "header",
            "text": {
                "type": "plain_text",
                "text": build_subject(artifact)[:150],
                "emoji": True,
            },
        },
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": _summary_line(artifact)[:500],
            },
        },
    ]

    if artifact.mode == "text" and artifact.diff_text:
        blocks.append({
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"```{artifact.diff_text[:2500]}```"},
        })

    blocks.append({
        "type": "actions",
        "elements": [
            {
                "type": "button",
                "text": {"type": "plain_text", "text": "Open Page", "emoji": True},
                "url": artifact.url,
                "style": "primary",
            },
        ],
    })
    return {"blocks": blocks}


def format_generic_payload(
    artifact: NotificationArtifact,
    subject: str,
    plain_body: str,
    html_body: Optional[str] = None,
) -> Dict[str, Any]:
    """Format a change as a generic JSON payload."""
    return {
        "type": "page_change",
        "timestamp": artifact.detected_at.isoformat(),
        "subject": subject,
        "text": plain_body,
        "html": html_body,
        "monitor": {
            "id": artifact.target_id,
            "name": artifact.target_name,
            "url": artifact.url,
            "mode": artifact.mode,
        },
        "change": {
            "old_value": artifact.old_value,
            "new_value": artifact.new_value,
            "diff": artifact.diff_text,
            "summary": artifact.ai_summary,
            "price": float(artifact.price) if artifact.price is not None else None,
            "currency": artifact.currency,
            "diff_pixels": artifact.diff_pixels,
        },
    }
