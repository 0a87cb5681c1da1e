"""Tests for the LeadFlow branded HTML email layout."""

from __future__ import annotations

from leadflow.services.email_html_base import (
    COLOR_DANGER,
    render_branded_email,
    render_cta_button,
    render_info_box,
    render_paragraph,
)


def test_render_branded_email_has_html_structure():
    html = render_branded_email(title="Test Email", body_content="<p>Hello</p>")
    assert '<html lang="en"' in html
    assert "<title>Test Email</title>" in html
    assert "<p>Hello</p>" in html
    assert "</html>" in html


def test_render_branded_email_escapes_title():
    html = render_branded_email(title="<script>", body_content="")
    assert "<title>&lt;script&gt;</title>" in html


def test_render_branded_email_preheader():
    html = render_branded_email(title="T", body_content="<p>X</p>", preheader="Preview text here")
    assert "Preview text here" in html
    assert "display:none" in html


def test_render_branded_email_no_preheader():
    html = render_branded_email(title="T", body_content="<p>X</p>", preheader="")
    assert "max-height:0" not in html


def test_render_branded_email_footer_and_year():
    from datetime import datetime, timezone

    html = render_branded_email(title="T", body_content="<p>X</p>", footer_text="Custom Footer Line")
    assert "Custom Footer Line" in html
    assert str(datetime.now(timezone.utc).year) in html


def test_unsubscribe_link_only_when_given():
    without = render_branded_email(title="T", body_content="")
    with_link = render_branded_email(title="T", body_content="", unsubscribe_url="https://x.test/u/abc")
    assert "Unsubscribe" not in without
    assert 'href="https://x.test/u/abc"' in with_link


def test_render_cta_button_structure():
    html = render_cta_button(url="https://example.com/action?a=1&b=2", label="Click Me")
    assert "https://example.com/action?a=1&amp;b=2" in html
    assert "Click Me" in html
    assert 'role="presentation"' in html


def test_render_cta_button_custom_color():
    assert COLOR_DANGER in render_cta_button(url="https://x.test", label="Retry", color=COLOR_DANGER)


def test_render_info_box_and_paragraph():
    assert "<strong>Price:</strong> $10" in render_info_box("<strong>Price:</strong> $10")
    assert render_paragraph("Hello").startswith("<p ")
