from aiogram.types import InlineKeyboardMarkup
from aiogram.utils.keyboard import InlineKeyboardBuilder

from engine import Field, Wizard

def get_menu_kb() -> InlineKeyboardMarkup:
    """Головне меню з усіма сценаріями."""
    builder = InlineKeyboardBuilder()
    builder.button(text="🛍 Sell an item", callback_data="menu_listing")
    builder.button(text="👤 My profile", callback_data="menu_profile")
    builder.button(text="📝 Sign up", callback_data="menu_signup")
    builder.button(text="🔑 Log in", callback_data="menu_login")
    builder.adjust(2)
    return builder.as_markup()

def get_login_kb(login_url: str) -> InlineKeyboardMarkup:
    """Клавіатура для неавторизованого користувача."""
    builder = InlineKeyboardBuilder()
    builder.button(text="🔑 Log in here", callback_data="menu_login")
    builder.button(text="🌐 Open login page", url=login_url)
    builder.button(text="📝 Create an account", callback_data="menu_signup")
    builder.adjust(1)
    return builder.as_markup()

def get_step_kb(wizard: Wizard) -> InlineKeyboardMarkup:
    """Кнопки поточного кроку: поля, фото, навігація."""
    builder = InlineKeyboardBuilder()
    sizes = []

    for field in wizard.fields():
        if field.kind == "toggle":
            mark = "✅" if wizard.get(field.name) else "⬜️"
            builder.button(text=f"{mark} {field.label}", callback_data=f"wz_toggle_{field.name}")
        else:
            builder.button(text=f"✏️ {field.label}", callback_data=f"wz_edit_{field.name}")
    # По дві кнопки полів в ряд
    sizes.extend([2] * (len(wizard.fields()) // 2) + [1] * (len(wizard.fields()) % 2))

    if wizard.step.accepts_assets and len(wizard.staging):
        for i in range(len(wizard.staging)):
            builder.button(text=f"🗑 Photo {i + 1}", callback_data=f"wz_rm_{i}")
        builder.button(text="👁 Preview", callback_data="wz_preview")
        count = len(wizard.staging) + 1
        sizes.extend([3] * (count // 3) + ([count % 3] if count % 3 else []))

    nav = 0
    if wizard.index > 0:
        builder.button(text="⬅️ Back", callback_data="wz_back")
        nav += 1
    if wizard.is_last_step:
        builder.button(text=f"🚀 {wizard.config.submit_label}", callback_data="wz_next")
    else:
        builder.button(text="Next ➡️", callback_data="wz_next")
    nav += 1
    builder.button(text="✖️ Cancel", callback_data="wz_cancel")
    sizes.extend([nav, 1])

    builder.adjust(*sizes)
    return builder.as_markup()

def get_choice_kb(field: Field) -> InlineKeyboardMarkup:
    """Варіанти для поля-вибору. У callback_data лише індекс (ліміт Telegram 64 байти)."""
    builder = InlineKeyboardBuilder()
    for i, (_, label) in enumerate(field.choices):
        builder.button(text=label, callback_data=f"wz_set_{field.name}_{i}")
    builder.button(text="⬅️ Back to form", callback_data="wz_show")
    builder.adjust(1)
    return builder.as_markup()

def get_input_kb() -> InlineKeyboardMarkup:
    """Під час вводу тексту лише повернення до форми."""
    builder = InlineKeyboardBuilder()
    builder.button(text="⬅️ Back to form", callback_data="wz_show")
    return builder.as_markup()
