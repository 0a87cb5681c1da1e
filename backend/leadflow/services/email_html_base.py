"""
LeadFlow branded HTML email layout

Table-based, inline-CSS wrapper shared by every notification email.
Compatible with: Outlook, Gmail, Yahoo, Apple Mail.

Usage:
    from leadflow.services.email_html_base import render_branded_email

    html = render_branded_email(
        title="New lead",
        body_content="<p>You have a new lead in <strong>90210</strong>.</p>",
        preheader="New plumbing lead near you",
    )
"""

from __future__ import annotations

from datetime import datetime, timezone
from html import escape as html_escape

from leadflow.core.config import get_settings

# ── Brand tokens ──────────────────────────────────────────────
COLOR_PRIMARY = "#1f6feb"
COLOR_DANGER = "#c0392b"
COLOR_BG = "#f6f8fa"
COLOR_WHITE = "#ffffff"
COLOR_BORDER = "#d8dee4"
COLOR_TEXT = "#1f2328"
COLOR_MUTED = "#59636e"
COLOR_HIGHLIGHT_BG = "#eef4fd"

FONT_STACK = "'Segoe UI', Roboto, 'Helvetica Neue', Arial, sans-serif"

DEFAULT_FOOTER = "Local pros, matched fast"


def base_url() -> str:
    return (get_settings().public_base_url or "http://localhost:8000").rstrip("/")


def render_branded_email(
    *,
    title: str,
    body_content: str,
    preheader: str = "",
    footer_text: str = DEFAULT_FOOTER,
    unsubscribe_url: str = "",
) -> str:
    """Render body_content inside the branded layout.

    Args:
        title: Email title (used in <title>).
        body_content: Inner HTML; callers escape user-supplied values.
        preheader: Hidden preview text shown by email clients.
        footer_text: Footer tagline text.
        unsubscribe_url: When set, an unsubscribe link is added to the footer.
    """
    year = datetime.now(timezone.utc).year

    preheader_html = ""
    if preheader:
        preheader_html = (
            f'<div style="display:none;font-size:1px;color:{COLOR_BG};line-height:1px;'
            f'max-height:0;max-width:0;opacity:0;overflow:hidden;">'
            f"{html_escape(preheader)}"
            f"</div>"
        )

    unsubscribe_html = ""
    if unsubscribe_url:
        unsubscribe_html = (
            f'<br /><a href="{html_escape(unsubscribe_url)}" style="color:{COLOR_MUTED};">'
            f"Unsubscribe from these emails</a>"
        )

    return f"""\
<!DOCTYPE html>
<html lang="en" xmlns="http://www.w3.org/1999/xhtml">
<head>
  <meta charset="UTF-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1.0" />
  <title>{html_escape(title)}</title>
</head>
<body style="margin:0;padding:0;background-color:{COLOR_BG};font-family:{FONT_STACK};">
{preheader_html}
<table role="presentation" cellspacing="0" cellpadding="0" border="0" width="100%" style="background-color:{COLOR_BG};">
  <tr>
    <td align="center" style="padding:24px 16px;">
      <table role="presentation" cellspacing="0" cellpadding="0" border="0" width="600" style="max-width:600px;width:100%;background-color:{COLOR_WHITE};border:1px solid {COLOR_BORDER};border-radius:12px;overflow:hidden;">
        <tr>
          <td style="padding:24px 32px 16px 32px;border-bottom:3px solid {COLOR_PRIMARY};font-size:20px;font-weight:700;color:{COLOR_PRIMARY};">
            LeadFlow
          </td>
        </tr>
        <tr>
          <td style="padding:28px 32px;color:{COLOR_TEXT};font-size:15px;line-height:1.6;">
{body_content}
          </td>
        </tr>
        <tr>
          <td style="padding:20px 32px;background-color:{COLOR_BG};border-top:1px solid {COLOR_BORDER};text-align:center;font-size:12px;color:{COLOR_MUTED};line-height:1.5;">
            {html_escape(footer_text)}<br />
            &copy; {year} LeadFlow{unsubscribe_html}
          </td>
        </tr>
      </table>
    </td>
  </tr>
</table>
</body>
</html>"""


def render_paragraph(text: str) -> str:
    return f'<p style="margin:0 0 16px 0;font-size:15px;">{text}</p>'


def render_cta_button(*, url: str, label: str, color: str = COLOR_PRIMARY) -> str:
    """Table-based CTA button that survives Outlook."""
    return (
        f'<table role="presentation" cellspacing="0" cellpadding="0" border="0" style="margin:20px auto;">'
        f"<tr>"
        f'<td align="center" style="border-radius:6px;background:{color};">'
        f'<a href="{html_escape(url)}" target="_blank" '
        f'style="display:inline-block;padding:14px 32px;color:{COLOR_WHITE};'
        f"font-family:{FONT_STACK};font-size:15px;font-weight:700;"
        f'text-decoration:none;border-radius:6px;">'
        f"{html_escape(label)}"
        f"</a>"
        f"</td>"
        f"</tr>"
        f"</table>"
    )


def render_info_box(content: str, *, bg_color: str = COLOR_HIGHLIGHT_BG) -> str:
    """Highlighted box for key details; ``content`` must already be escaped."""
    return (
        f'<table role="presentation" cellspacing="0" cellpadding="0" border="0" width="100%"'
        f' style="margin:16px 0;">'
        f"<tr>"
        f'<td style="padding:16px 20px;background-color:{bg_color};border-radius:8px;'
        f"border:1px solid {COLOR_BORDER};font-size:15px;"
        f'line-height:1.6;color:{COLOR_TEXT};">'
        f"{content}"
        f"</td>"
        f"</tr>"
        f"</table>"
    )
