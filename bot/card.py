from PIL import Image, ImageDraw, ImageFont
import io
import os
import textwrap
from typing import Any, Mapping, Optional

CARD_WIDTH, CARD_HEIGHT = 750, 950
COVER_SIZE = (650, 360)

def format_price(form: Mapping[str, Any]) -> str:
    """Ціна для показу: FREE для безкоштовних, інакше число як ввів користувач."""
    if form.get("isFree"):
        return "FREE"
    price = str(form.get("price") or "").strip().replace(",", ".")
    try:
        return f"{float(price):,.2f}"
    except ValueError:
        return price or "—"

def _load_fonts():
    try:
        font_path_reg = os.path.join("assets", "Roboto-Regular.ttf")
        font_path_bold = os.path.join("assets", "Roboto-Bold.ttf")

        # Намагаємось використати завантажені шрифти Roboto
        return {
            "title": ImageFont.truetype(font_path_bold, 42),
            "subtitle": ImageFont.truetype(font_path_reg, 30),
            "text": ImageFont.truetype(font_path_reg, 26),
            "bold": ImageFont.truetype(font_path_bold, 28),
            "price": ImageFont.truetype(font_path_bold, 52),
        }
    except IOError:
        # Fallback якщо шрифти не знайдено
        default = ImageFont.load_default()
        return {key: default for key in ("title", "subtitle", "text", "bold", "price")}

def generate_listing_card(form: Mapping[str, Any], cover: Optional[bytes] = None, photo_count: int = 0) -> io.BytesIO:
    """Генерує PNG-картку оголошення для перегляду перед публікацією."""
    img = Image.new('RGB', (CARD_WIDTH, CARD_HEIGHT), color=(255, 255, 255))
    draw = ImageDraw.Draw(img)
    fonts = _load_fonts()

    # Обкладинка: перше фото або сіра заглушка
    y = 50
    if cover:
        with Image.open(io.BytesIO(cover)) as photo:
            photo = photo.convert("RGB")
            photo.thumbnail(COVER_SIZE)
            x = 50 + (COVER_SIZE[0] - photo.width) // 2
            img.paste(photo, (x, y + (COVER_SIZE[1] - photo.height) // 2))
    else:
        draw.rectangle((50, y, 50 + COVER_SIZE[0], y + COVER_SIZE[1]), fill=(243, 244, 246))
        draw.text((300, y + 160), "No photos", fill=(156, 163, 175), font=fonts["subtitle"])
    if photo_count > 1:
        draw.text((60, y + COVER_SIZE[1] - 40), f"+{photo_count - 1} more", fill=(37, 99, 235), font=fonts["bold"])

    y += COVER_SIZE[1] + 30
    for line in textwrap.wrap(form.get("itemName") or "Untitled item", width=28)[:2]:
        draw.text((50, y), line, fill=(17, 24, 39), font=fonts["title"])
        y += 52

    draw.text((50, y + 5), format_price(form), fill=(37, 99, 235), font=fonts["price"])
    y += 80

    details = [
        ("Category", form.get("category")),
        ("Condition", form.get("condition")),
        ("Location", form.get("hostel")),
    ]
    for label, value in details:
        if value:
            draw.text((50, y), f"{label}:", fill=(107, 114, 128), font=fonts["text"])
            draw.text((230, y), str(value)[:36], fill=(17, 24, 39), font=fonts["bold"])
            y += 40

    draw.line((50, y + 10, 700, y + 10), fill=(229, 231, 235), width=2)
    y += 30
    for line in textwrap.wrap(form.get("description") or "", width=48)[:3]:
        draw.text((50, y), line, fill=(55, 65, 81), font=fonts["text"])
        y += 34

    # Зберігаємо в BytesIO
    bio = io.BytesIO()
    img.save(bio, format='PNG')
    bio.seek(0)
    return bio
