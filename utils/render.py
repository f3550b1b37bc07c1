"""Utilities for rendering leaderboard and player cards into PNG images."""

from __future__ import annotations

from io import BytesIO
from time import perf_counter
from typing import Any, Mapping, Optional, Sequence, Tuple

from PIL import Image, ImageDraw, ImageFont

from utils.logging_config import get_logger

logger = get_logger("render")


WIDTH = 800
HEADER_H = 130
ROW_H = 44
ROW_GAP = 4
PAD = 28
FOOTER_H = 72
CORNER_R = 16
MAX_ENTRIES = 50
TOURNAMENT_HEADER_EXTRA = 20

PLAYER_CARD_SIZE = (600, 340)

COLOR_BG_DARK = "#0a0e1a"
COLOR_BG_ROW = "#1e2340"
COLOR_BG_ROW_ALT = "#1a1f38"
COLOR_ACCENT = "#ff6b35"
COLOR_ACCENT2 = "#ffb800"
COLOR_ACCENT3 = "#00e5ff"
COLOR_TEXT = "#e8e8f0"
COLOR_TEXT_DIM = "#7a7e9a"
COLOR_SUCCESS = "#44d62c"
COLOR_GOLD = "#ffd700"
COLOR_SILVER = "#c0c0c0"
COLOR_BRONZE = "#cd7f32"
COLOR_HIGHLIGHT = "#0f3440"

MEDAL_COLORS = {1: COLOR_GOLD, 2: COLOR_SILVER, 3: COLOR_BRONZE}
MEDAL_ROW_COLORS = {1: "#2a2a1e", 2: "#24283a", 3: "#2a2230"}

SKIN_COLORS = {
    "default": "#ff6b35",
    "neon": "#00e5ff",
    "golden": "#ffd700",
    "shadow": "#8844ff",
    "fire": "#ff3860",
    "ice": "#88ddff",
    "matrix": "#44d62c",
    "cosmic": "#ff88ff",
}

FOOTER_BRAND = "FLAPPY BERT  •  FLAP TO EARN"
NAME_LIMIT = 18


def _load_font(size: int, bold: bool = False) -> ImageFont.ImageFont:
    """Return a PIL font object, falling back to the default bitmap font."""

    font_name = "DejaVuSans-Bold.ttf" if bold else "DejaVuSans.ttf"
    try:
        return ImageFont.truetype(font_name, size)
    except OSError:
        logger.debug("Falling back to default PIL font for size %s", size)
        return ImageFont.load_default()


def _text_size(draw: ImageDraw.ImageDraw, text: str, font: ImageFont.ImageFont) -> Tuple[int, int]:
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    return right - left, bottom - top


def _draw_centered_text(
    draw: ImageDraw.ImageDraw,
    xy: Tuple[int, int, int, int],
    text: str,
    font: ImageFont.ImageFont,
    fill: str,
) -> None:
    """Draw text centered inside the provided bounding box."""

    if not text:
        return

    left, top, right, bottom = xy
    text_width, text_height = _text_size(draw, text, font)
    x = left + (right - left - text_width) / 2
    y = top + (bottom - top - text_height) / 2
    draw.text((x, y), text, font=font, fill=fill)


def _draw_right_text(
    draw: ImageDraw.ImageDraw, right: int, center_y: float, text: str, font: ImageFont.ImageFont, fill: str
) -> None:
    text_width, text_height = _text_size(draw, text, font)
    draw.text((right - text_width, center_y - text_height / 2), text, font=font, fill=fill)


def _display_name(entry: Mapping[str, Any]) -> str:
    name = str(entry.get("first_name") or entry.get("username") or "Unknown")
    if len(name) > NAME_LIMIT:
        name = name[: NAME_LIMIT - 1] + "…"
    return name


def _skin_color(entry: Mapping[str, Any]) -> str:
    return SKIN_COLORS.get(entry.get("skin") or "default", COLOR_ACCENT)


def _to_png(image: Image.Image) -> bytes:
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def _draw_frame(draw: ImageDraw.ImageDraw, width: int, height: int, border: str) -> None:
    draw.rounded_rectangle((1, 1, width - 2, height - 2), radius=CORNER_R, outline=border, width=2)
    length, offset = 20, 8
    for x, y, dx, dy in (
        (offset, offset, 1, 1),
        (width - offset, offset, -1, 1),
        (offset, height - offset, 1, -1),
        (width - offset, height - offset, -1, -1),
    ):
        draw.line([(x, y + dy * length), (x, y), (x + dx * length, y)], fill=COLOR_ACCENT2, width=2)


def _draw_trophy(draw: ImageDraw.ImageDraw, cx: float, cy: float, size: int, color: str) -> None:
    s = size / 24
    draw.polygon(
        [(cx - 8 * s, cy - 8 * s), (cx + 8 * s, cy - 8 * s), (cx + 6 * s, cy + 6 * s), (cx - 6 * s, cy + 6 * s)],
        fill=color,
    )
    draw.rectangle((cx - 2 * s, cy + 6 * s, cx + 2 * s, cy + 12 * s), fill=color)
    draw.rectangle((cx - 6 * s, cy + 11 * s, cx + 6 * s, cy + 14 * s), fill=color)
    draw.arc((cx - 13 * s, cy - 5 * s, cx - 5 * s, cy + 3 * s), 90, 270, fill=color, width=max(1, int(2 * s)))
    draw.arc((cx + 5 * s, cy - 5 * s, cx + 13 * s, cy + 3 * s), 270, 90, fill=color, width=max(1, int(2 * s)))


def _draw_medal(draw: ImageDraw.ImageDraw, cx: float, cy: float, radius: int, rank: int) -> None:
    color = MEDAL_COLORS[rank]
    draw.ellipse((cx - radius, cy - radius, cx + radius, cy + radius), fill=color, outline="#333333")
    _draw_centered_text(
        draw,
        (int(cx - radius), int(cy - radius), int(cx + radius), int(cy + radius)),
        str(rank),
        _load_font(radius, bold=True),
        "#222222",
    )


def _draw_rows(
    draw: ImageDraw.ImageDraw,
    entries: Sequence[Mapping[str, Any]],
    start_y: int,
    highlight_id: Any,
) -> None:
    name_font = _load_font(14, bold=True)
    score_font = _load_font(16, bold=True)
    small_font = _load_font(12)
    rank_font = _load_font(14, bold=True)

    for index, entry in enumerate(entries):
        rank = index + 1
        y = start_y + index * (ROW_H + ROW_GAP)
        center_y = y + ROW_H / 2
        highlighted = highlight_id is not None and entry.get("telegram_id") == highlight_id

        background = COLOR_BG_ROW if index % 2 == 0 else COLOR_BG_ROW_ALT
        border = None
        if rank in MEDAL_COLORS:
            background = MEDAL_ROW_COLORS[rank]
            border = MEDAL_COLORS[rank]
        if highlighted:
            background = COLOR_HIGHLIGHT
            border = COLOR_ACCENT3
        draw.rounded_rectangle((PAD, y, WIDTH - PAD, y + ROW_H), radius=8, fill=background, outline=border)

        if rank in MEDAL_COLORS:
            _draw_medal(draw, PAD + 32, center_y, 12, rank)
        else:
            _draw_centered_text(
                draw, (PAD + 12, y, PAD + 52, y + ROW_H), f"#{rank}", rank_font, COLOR_TEXT_DIM
            )

        dot_x = PAD + 68
        draw.ellipse((dot_x - 10, center_y - 10, dot_x + 10, center_y + 10), fill=_skin_color(entry))

        name = _display_name(entry)
        if highlighted:
            name = f"▶ {name}  (YOU)"
        _, name_height = _text_size(draw, name, name_font)
        draw.text(
            (PAD + 86, center_y - name_height / 2),
            name,
            font=name_font,
            fill=COLOR_ACCENT3 if highlighted else COLOR_TEXT,
        )

        score_color = MEDAL_COLORS.get(rank, COLOR_ACCENT2)
        _draw_right_text(draw, WIDTH - PAD - 120, center_y, str(entry.get("best_score") or 0), score_font, score_color)
        _draw_right_text(draw, WIDTH - PAD - 46, center_y, str(entry.get("max_level") or 1), small_font, COLOR_SUCCESS)
        _draw_right_text(draw, WIDTH - PAD - 4, center_y, str(entry.get("games_played") or 0), small_font, COLOR_TEXT_DIM)


def _draw_column_headers(draw: ImageDraw.ImageDraw, y: int) -> None:
    font = _load_font(10, bold=True)
    draw.text((PAD + 8, y), "RANK", font=font, fill=COLOR_TEXT_DIM)
    draw.text((PAD + 80, y), "PLAYER", font=font, fill=COLOR_TEXT_DIM)
    _draw_right_text(draw, WIDTH - PAD - 120, y + 5, "SCORE", font, COLOR_TEXT_DIM)
    _draw_right_text(draw, WIDTH - PAD - 40, y + 5, "LEVEL", font, COLOR_TEXT_DIM)
    _draw_right_text(draw, WIDTH - PAD, y + 5, "GAMES", font, COLOR_TEXT_DIM)


def _draw_footer(draw: ImageDraw.ImageDraw, width: int, height: int, note: Optional[str]) -> None:
    footer_y = height - FOOTER_H
    draw.line([(PAD, footer_y + 4), (width - PAD, footer_y + 4)], fill=COLOR_ACCENT3, width=1)
    if note:
        _draw_centered_text(draw, (0, footer_y + 14, width, footer_y + 34), note, _load_font(11), COLOR_TEXT_DIM)
    _draw_centered_text(
        draw, (0, footer_y + 36, width, footer_y + 50), FOOTER_BRAND, _load_font(10, bold=True), COLOR_ACCENT
    )


def leaderboard_card_height(count: int, extra_header: int = 0) -> int:
    rows = min(count, MAX_ENTRIES)
    return HEADER_H + extra_header + rows * (ROW_H + ROW_GAP) + FOOTER_H + PAD * 2


def render_leaderboard_card(
    entries: Sequence[Mapping[str, Any]],
    *,
    highlight_id: Any = None,
    reset_in: Optional[str] = None,
    week_label: Optional[str] = None,
) -> bytes:
    """Render the weekly leaderboard (top ``MAX_ENTRIES`` rows) as PNG bytes."""

    start_time = perf_counter()
    shown = list(entries[:MAX_ENTRIES])
    height = leaderboard_card_height(len(shown))

    image = Image.new("RGB", (WIDTH, height), COLOR_BG_DARK)
    draw = ImageDraw.Draw(image)
    _draw_frame(draw, WIDTH, height, COLOR_ACCENT)

    _draw_trophy(draw, WIDTH / 2, 32, 28, COLOR_ACCENT2)
    _draw_centered_text(draw, (0, 62, WIDTH, 92), "FLAPPY BERT", _load_font(28, bold=True), COLOR_ACCENT)
    _draw_centered_text(draw, (0, 92, WIDTH, 110), "WEEKLY LEADERBOARD", _load_font(16, bold=True), COLOR_ACCENT2)
    if week_label:
        _draw_centered_text(draw, (0, 110, WIDTH, 124), week_label, _load_font(12), COLOR_TEXT_DIM)
    draw.line([(PAD, HEADER_H - 8), (WIDTH - PAD, HEADER_H - 8)], fill=COLOR_ACCENT2, width=2)

    _draw_column_headers(draw, HEADER_H + 2)
    start_y = HEADER_H + 20
    if shown:
        _draw_rows(draw, shown, start_y, highlight_id)
    else:
        _draw_centered_text(
            draw,
            (0, start_y + 20, WIDTH, start_y + 60),
            "No scores this week. Be the first to play!",
            _load_font(14),
            COLOR_TEXT_DIM,
        )

    _draw_footer(draw, WIDTH, height, f"Resets in {reset_in}" if reset_in else None)
    payload = _to_png(image)
    logger.debug("Rendered leaderboard card with %s rows in %.3f seconds", len(shown), perf_counter() - start_time)
    return payload


def render_tournament_card(
    entries: Sequence[Mapping[str, Any]],
    *,
    name: str,
    sponsor: Optional[str] = None,
    ends_in: Optional[str] = None,
    highlight_id: Any = None,
) -> bytes:
    shown = list(entries[:MAX_ENTRIES])
    height = leaderboard_card_height(len(shown), TOURNAMENT_HEADER_EXTRA)

    image = Image.new("RGB", (WIDTH, height), COLOR_BG_DARK)
    draw = ImageDraw.Draw(image)
    _draw_frame(draw, WIDTH, height, COLOR_GOLD)

    _draw_trophy(draw, WIDTH / 2, 32, 28, COLOR_GOLD)
    _draw_centered_text(draw, (0, 62, WIDTH, 90), name or "TOURNAMENT", _load_font(24, bold=True), COLOR_GOLD)
    if sponsor:
        _draw_centered_text(
            draw, (0, 92, WIDTH, 108), f"Sponsored by {sponsor}", _load_font(13, bold=True), COLOR_ACCENT3
        )
    if ends_in:
        _draw_centered_text(draw, (0, 112, WIDTH, 126), f"Ends in {ends_in}", _load_font(11, bold=True), COLOR_SUCCESS)
    line_y = HEADER_H + 12
    draw.line([(PAD, line_y), (WIDTH - PAD, line_y)], fill=COLOR_GOLD, width=2)

    _draw_column_headers(draw, HEADER_H + TOURNAMENT_HEADER_EXTRA)
    start_y = HEADER_H + TOURNAMENT_HEADER_EXTRA + 12
    if shown:
        _draw_rows(draw, shown, start_y, highlight_id)
    else:
        _draw_centered_text(
            draw, (0, start_y + 20, WIDTH, start_y + 60), "No scores yet.", _load_font(14), COLOR_TEXT_DIM
        )

    _draw_footer(draw, WIDTH, height, None)
    return _to_png(image)


def render_player_card(
    player: Mapping[str, Any],
    stats: Mapping[str, Any],
    rank: Optional[int],
) -> bytes:
    """Render a personal stats card.

    ``stats`` merges the weekly numbers (``best_score``, ``games_played``,
    ``max_level``) with ``all_time_best``; ``player`` carries the name,
    skin and coin balance.
    """

    width, height = PLAYER_CARD_SIZE
    image = Image.new("RGB", (width, height), COLOR_BG_DARK)
    draw = ImageDraw.Draw(image)
    _draw_frame(draw, width, height, COLOR_ACCENT3)

    _draw_centered_text(draw, (0, 20, width, 48), "PLAYER STATS", _load_font(22, bold=True), COLOR_ACCENT3)
    _draw_centered_text(draw, (0, 58, width, 82), _display_name(player), _load_font(18, bold=True), COLOR_TEXT)
    draw.ellipse((width / 2 - 16, 84, width / 2 + 16, 116), fill=_skin_color(player), outline="#444444", width=2)

    cells = (
        ("WEEKLY BEST", stats.get("best_score") or 0, COLOR_ACCENT2),
        ("WEEKLY RANK", f"#{rank}" if rank else "-", COLOR_ACCENT),
        ("GAMES PLAYED", stats.get("games_played") or 0, COLOR_ACCENT3),
        ("MAX LEVEL", stats.get("max_level") or 0, COLOR_SUCCESS),
        ("ALL-TIME BEST", stats.get("all_time_best") or 0, COLOR_GOLD),
        ("TOTAL COINS", player.get("coins") or 0, COLOR_ACCENT2),
    )
    columns = 3
    cell_w = (width - 60) / columns
    cell_h = 70
    value_font = _load_font(22, bold=True)
    label_font = _load_font(9)
    for index, (label, value, color) in enumerate(cells):
        col = index % columns
        row = index // columns
        left = int(30 + col * cell_w)
        top = 130 + row * cell_h
        draw.rounded_rectangle((left + 4, top - 4, int(left + cell_w - 4), top + cell_h - 12), radius=8, fill=COLOR_BG_ROW_ALT)
        _draw_centered_text(draw, (left, top + 6, int(left + cell_w), top + 34), str(value), value_font, color)
        _draw_centered_text(draw, (left, top + 38, int(left + cell_w), top + 52), label, label_font, COLOR_TEXT_DIM)

    _draw_centered_text(draw, (0, height - 32, width, height - 14), FOOTER_BRAND, _load_font(10, bold=True), COLOR_ACCENT)
    return _to_png(image)


__all__ = [
    "MAX_ENTRIES",
    "WIDTH",
    "leaderboard_card_height",
    "render_leaderboard_card",
    "render_player_card",
    "render_tournament_card",
]
