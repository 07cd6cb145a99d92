"""Short HTML pages for the browser-facing legs of the flow."""

from __future__ import annotations

import html

from starlette.responses import HTMLResponse

_ERROR_COLOR = "#d32f2f"
_SUCCESS_COLOR = "#2e8b57"

_TEMPLATE = """<!DOCTYPE html>
<html>
  <head><meta charset="utf-8"><title>{title}</title></head>
  <body style="font-family: Arial, sans-serif; padding: 40px; text-align: center;">
    <h2 style="color: {color};">{title}</h2>
    {paragraphs}
  </body>
</html>
"""


def render_page(
    title: str,
    *lines: str,
    status_code: int = 200,
    success: bool = False,
) -> HTMLResponse:
    paragraphs = "\n    ".join(f"<p>{html.escape(line)}</p>" for line in lines)
    content = _TEMPLATE.format(
        title=html.escape(title),
        color=_SUCCESS_COLOR if success else _ERROR_COLOR,
        paragraphs=paragraphs,
    )
    return HTMLResponse(
        content,
        status_code=status_code,
        headers={"Cache-Control": "no-store"},
    )


def error_page(
    title: str,
    message: str,
    *,
    error: str | None = None,
    status_code: int = 400,
) -> HTMLResponse:
    lines = [message]
    if error:
        lines.append(f"Error code: {error}")
    lines.append("Please close this window and try again.")
    return render_page(title, *lines, status_code=status_code)
