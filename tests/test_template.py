"""Tests for capsule email rendering."""

from datetime import UTC, datetime

from timecapsule.capsules.models import Capsule
from timecapsule.delivery.template import (
    IMAGE_CID,
    format_date,
    render_html,
    render_subject,
    render_text,
)


def _capsule() -> Capsule:
    return Capsule(
        id=1,
        name="Bob & <Alice>",
        email="bob@example.com",
        message='I said "hi" <script>',
        image_path=None,
        deliver_at=datetime(2026, 6, 1, 15, 0, tzinfo=UTC),
        created_at=datetime(2025, 6, 1, 15, 0, tzinfo=UTC),
    )


def test_format_date_uses_display_timezone() -> None:
    value = datetime(2026, 6, 1, 15, 0, tzinfo=UTC)
    assert format_date(value, "America/Sao_Paulo") == "June 01, 2026 12:00"
    assert format_date(value, "UTC") == "June 01, 2026 15:00"


def test_subject_mentions_creation_date() -> None:
    assert render_subject(_capsule()) == "Your time capsule from June 01, 2025"


def test_text_body_contains_message() -> None:
    text = render_text(_capsule())
    assert "Hello, Bob & <Alice>!" in text
    assert 'I said "hi" <script>' in text


def test_html_escapes_user_content() -> None:
    html = render_html(_capsule(), with_image=False)
    assert "Bob &amp; &lt;Alice&gt;" in html
    assert "&lt;script&gt;" in html
    assert "<script>" not in html
    assert f"cid:{IMAGE_CID}" not in html


def test_html_references_inline_image() -> None:
    html = render_html(_capsule(), with_image=True)
    assert f'src="cid:{IMAGE_CID}"' in html
