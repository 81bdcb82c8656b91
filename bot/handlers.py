import logging
from html import escape
from typing import Optional, Tuple, Union

from aiogram import Router, F
from aiogram.exceptions import TelegramBadRequest
from aiogram.filters import Command, CommandObject, CommandStart, StateFilter
from aiogram.fsm.context import FSMContext
from aiogram.types import BufferedInputFile, CallbackQuery, InputMediaPhoto, Message

from backend import Backend
from config import Settings
from engine import Wizard
from errors import AuthRequiredError, BackendError
from staging import LocalFile
import flows
from bot import card, keyboards, render
from bot.sessions import AuthSessions, WizardSessions, build_wizard, require_user
from bot.states import WizardFSM

logger = logging.getLogger(__name__)
router = Router()

FLOW_COMMANDS = {
    "sell": "listing",
    "profile": "profile",
    "signup": "signup",
    "login": "login",
}
PROTECTED_FLOWS = ("listing", "profile")
ACTIVE_STATES = StateFilter(WizardFSM.filling, WizardFSM.entering_value)
EXPIRED_TEXT = "This form has expired. Use /start to begin again."


def _key(event: Union[Message, CallbackQuery]) -> Tuple[int, int]:
    message = event.message if isinstance(event, CallbackQuery) else event
    return message.chat.id, event.from_user.id


async def show_step(message: Message, wizard: Wizard, edit: bool = False):
    text = render.render_step(wizard)
    kb = keyboards.get_step_kb(wizard)
    if edit:
        try:
            await message.edit_text(text, reply_markup=kb, parse_mode="HTML")
            return
        except TelegramBadRequest as e:
            if "message is not modified" in str(e):
                return
            logger.warning(f"Could not edit step message, sending a new one: {e}")
    await message.answer(text, reply_markup=kb, parse_mode="HTML")


async def start_flow(
    message: Message,
    user_id: int,
    key: Tuple[int, int],
    state: FSMContext,
    flow_name: str,
    sessions: WizardSessions,
    auth_sessions: AuthSessions,
    backend: Backend,
    settings: Settings,
):
    scoped, user, values = backend, None, None

    if flow_name in PROTECTED_FLOWS:
        try:
            scoped, user = await require_user(backend, auth_sessions, user_id)
        except AuthRequiredError as e:
            logger.info(f"User {user_id} must log in before '{flow_name}'")
            await message.answer(f"🔒 {escape(str(e))}", reply_markup=keyboards.get_login_kb(settings.login_url))
            return
        except BackendError as e:
            logger.error(f"Could not verify session of user {user_id}: {e}", exc_info=True)
            await message.answer(f"❌ Could not verify your session: {escape(str(e))}")
            return

    if flow_name == "profile":
        try:
            values = await flows.load_profile(scoped.records, user.id)
        except BackendError as e:
            logger.error(f"Error fetching profile of user {user_id}: {e}", exc_info=True)

    wizard = sessions.start(key, build_wizard(flow_name, settings, scoped, user, values))
    await state.set_state(WizardFSM.filling)
    await state.update_data(flow=flow_name, pending_field=None, user_id=user.id if user else None)
    logger.info(f"User {user_id} started flow '{flow_name}'")
    await show_step(message, wizard)


@router.message(CommandStart())
async def cmd_start(message: Message, state: FSMContext, sessions: WizardSessions):
    sessions.close(_key(message))
    await state.clear()
    logger.info(f"User {message.from_user.id} ({message.from_user.username}) started the bot.")
    await message.answer(
        "👋 Welcome to <b>Exchangezo</b> — buy and sell used items with fellow students!\n\n"
        "• /sell — post a new listing\n"
        "• /profile — create or edit your profile\n"
        "• /signup — create an account\n"
        "• /login — log in to your account\n"
        "• /cancel — stop filling the current form",
        reply_markup=keyboards.get_menu_kb(),
        parse_mode="HTML"
    )


@router.message(Command("sell", "profile", "signup", "login"))
async def cmd_flow(
    message: Message,
    command: CommandObject,
    state: FSMContext,
    sessions: WizardSessions,
    auth_sessions: AuthSessions,
    backend: Backend,
    settings: Settings,
):
    flow_name = FLOW_COMMANDS[command.command]
    await start_flow(message, message.from_user.id, _key(message), state, flow_name, sessions, auth_sessions, backend, settings)


@router.callback_query(F.data.startswith("menu_"))
async def process_menu(
    callback: CallbackQuery,
    state: FSMContext,
    sessions: WizardSessions,
    auth_sessions: AuthSessions,
    backend: Backend,
    settings: Settings,
):
    flow_name = callback.data[len("menu_"):]
    if flow_name not in FLOW_COMMANDS.values():
        await callback.answer("Unknown action.", show_alert=True)
        return
    await callback.answer()
    await start_flow(callback.message, callback.from_user.id, _key(callback), state, flow_name, sessions, auth_sessions, backend, settings)


@router.message(Command("cancel"))
async def cmd_cancel(message: Message, state: FSMContext, sessions: WizardSessions):
    sessions.close(_key(message))
    await state.clear()
    logger.info(f"User {message.from_user.id} cancelled the current form.")
    await message.answer("Form cancelled. Nothing was saved.", reply_markup=keyboards.get_menu_kb())


@router.message(Command("logout"))
async def cmd_logout(message: Message, state: FSMContext, sessions: WizardSessions, auth_sessions: AuthSessions):
    sessions.close(_key(message))
    await state.clear()
    if auth_sessions.logout(message.from_user.id):
        logger.info(f"User {message.from_user.id} logged out.")
        await message.answer("👋 You have been logged out.")
    else:
        await message.answer("You are not logged in.")


# --- Кнопки майстра ---

async def _get_wizard(callback: CallbackQuery, sessions: WizardSessions) -> Optional[Wizard]:
    wizard = sessions.get(_key(callback))
    if wizard is None:
        logger.warning(f"User {callback.from_user.id} pressed '{callback.data}' without an active form")
        await callback.answer(EXPIRED_TEXT, show_alert=True)
    return wizard


@router.callback_query(WizardFSM.submitting, F.data.startswith("wz_"))
async def process_while_submitting(callback: CallbackQuery):
    await callback.answer("⏳ Submitting, please wait...")


@router.callback_query(ACTIVE_STATES, F.data.startswith("wz_edit_"))
async def process_edit(callback: CallbackQuery, state: FSMContext, sessions: WizardSessions):
    wizard = await _get_wizard(callback, sessions)
    if not wizard:
        return
    name = callback.data[len("wz_edit_"):]
    field = wizard.active_field(name)
    if field is None:
        await callback.answer("This field is not on the current step.", show_alert=True)
        return

    await callback.answer()
    if field.kind == "choice":
        await state.set_state(WizardFSM.filling)
        await callback.message.edit_text(
            f"Choose <b>{escape(field.label)}</b>:",
            reply_markup=keyboards.get_choice_kb(field),
            parse_mode="HTML"
        )
        return

    await state.set_state(WizardFSM.entering_value)
    await state.update_data(pending_field=name)
    hint = f"\n<i>{escape(field.hint)}</i>" if field.hint else ""
    await callback.message.edit_text(
        f"✍️ Send the value for <b>{escape(field.label)}</b>.{hint}",
        reply_markup=keyboards.get_input_kb(),
        parse_mode="HTML"
    )


@router.callback_query(ACTIVE_STATES, F.data == "wz_show")
async def process_show(callback: CallbackQuery, state: FSMContext, sessions: WizardSessions):
    wizard = await _get_wizard(callback, sessions)
    if not wizard:
        return
    await state.set_state(WizardFSM.filling)
    await state.update_data(pending_field=None)
    await callback.answer()
    await show_step(callback.message, wizard, edit=True)


@router.callback_query(ACTIVE_STATES, F.data.startswith("wz_set_"))
async def process_choice(callback: CallbackQuery, sessions: WizardSessions):
    wizard = await _get_wizard(callback, sessions)
    if not wizard:
        return
    name, _, index = callback.data[len("wz_set_"):].rpartition("_")
    field = wizard.active_field(name)
    if field is None or field.kind != "choice" or not index.isdigit() or int(index) >= len(field.choices):
        logger.warning(f"User {callback.from_user.id} sent invalid choice: {callback.data}")
        await callback.answer("Invalid option.", show_alert=True)
        return

    value = field.choices[int(index)][0]
    wizard.set_field(name, value)
    logger.info(f"User {callback.from_user.id} set {name} = {value}")
    await callback.answer()
    await show_step(callback.message, wizard, edit=True)


@router.callback_query(ACTIVE_STATES, F.data.startswith("wz_toggle_"))
async def process_toggle(callback: CallbackQuery, sessions: WizardSessions):
    wizard = await _get_wizard(callback, sessions)
    if not wizard:
        return
    name = callback.data[len("wz_toggle_"):]
    field = wizard.active_field(name)
    if field is None or field.kind != "toggle":
        logger.warning(f"User {callback.from_user.id} toggled {name} outside its step")
        await callback.answer("This field is not on the current step.", show_alert=True)
        return
    value = wizard.toggle(name)
    logger.info(f"User {callback.from_user.id} set {name} = {value}")
    await callback.answer()
    await show_step(callback.message, wizard, edit=True)


@router.callback_query(ACTIVE_STATES, F.data.startswith("wz_rm_"))
async def process_remove_photo(callback: CallbackQuery, sessions: WizardSessions):
    wizard = await _get_wizard(callback, sessions)
    if not wizard:
        return
    index = callback.data[len("wz_rm_"):]
    if not index.isdigit() or not wizard.remove_asset(int(index)):
        await callback.answer(wizard.asset_error or "Photo not found.", show_alert=True)
        return
    logger.info(f"User {callback.from_user.id} removed photo #{int(index) + 1}")
    await callback.answer("Photo removed")
    await show_step(callback.message, wizard, edit=True)


@router.callback_query(ACTIVE_STATES, F.data == "wz_preview")
async def process_preview(callback: CallbackQuery, sessions: WizardSessions):
    wizard = await _get_wizard(callback, sessions)
    if not wizard:
        return
    await callback.answer("Preparing preview... ⏳")
    registry = wizard.staging.registry
    thumbs = [registry.thumbnail(ref) for ref in wizard.staging.refs]

    if wizard.config.name == "listing":
        cover = wizard.staging.resolve(0).data if thumbs else None
        img_io = card.generate_listing_card(wizard.form, cover=cover, photo_count=len(thumbs))
        await callback.message.answer_photo(
            BufferedInputFile(img_io.read(), filename="listing_preview.png"),
            caption="👁 This is how your listing will look."
        )

    if len(thumbs) == 1:
        await callback.message.answer_photo(BufferedInputFile(thumbs[0], filename="photo_1.jpg"))
    elif len(thumbs) > 1:
        await callback.message.answer_media_group([
            InputMediaPhoto(media=BufferedInputFile(thumb, filename=f"photo_{i}.jpg"))
            for i, thumb in enumerate(thumbs, start=1)
        ])
    await show_step(callback.message, wizard)


@router.callback_query(ACTIVE_STATES, F.data == "wz_back")
async def process_back(callback: CallbackQuery, state: FSMContext, sessions: WizardSessions):
    wizard = await _get_wizard(callback, sessions)
    if not wizard:
        return
    wizard.retreat()
    await state.set_state(WizardFSM.filling)
    await callback.answer()
    await show_step(callback.message, wizard, edit=True)


@router.callback_query(ACTIVE_STATES, F.data == "wz_cancel")
async def process_cancel(callback: CallbackQuery, state: FSMContext, sessions: WizardSessions):
    sessions.close(_key(callback))
    await state.clear()
    await callback.answer()
    await callback.message.edit_text("Form cancelled. Nothing was saved.", reply_markup=keyboards.get_menu_kb())


@router.callback_query(ACTIVE_STATES, F.data == "wz_next")
async def process_next(
    callback: CallbackQuery,
    state: FSMContext,
    sessions: WizardSessions,
    auth_sessions: AuthSessions,
):
    wizard = await _get_wizard(callback, sessions)
    if not wizard:
        return
    await state.set_state(WizardFSM.filling)

    if not wizard.is_last_step:
        if await wizard.advance():
            logger.info(f"User {callback.from_user.id} moved to step '{wizard.step.name}' of '{wizard.config.name}'")
            await callback.answer()
        else:
            await callback.answer("Please fix the highlighted fields.")
        await show_step(callback.message, wizard, edit=True)
        return

    # Останній крок: відправка, поки вона триває, кнопок немає
    await state.set_state(WizardFSM.submitting)
    await callback.answer()
    try:
        await callback.message.edit_text(render.render_step(wizard) + "\n\n⏳ Submitting...", parse_mode="HTML")
    except TelegramBadRequest as e:
        logger.warning(f"Could not show submitting status: {e}")

    await wizard.advance()

    if wizard.completed:
        await finish_flow(callback, state, wizard, sessions, auth_sessions)
        return

    await state.set_state(WizardFSM.filling)
    await show_step(callback.message, wizard, edit=True)


async def finish_flow(
    callback: CallbackQuery,
    state: FSMContext,
    wizard: Wizard,
    sessions: WizardSessions,
    auth_sessions: AuthSessions,
):
    record = wizard.submission.result.record or {}
    text = wizard.config.success_text
    flow_name = wizard.config.name

    if flow_name == "login":
        auth_sessions.login(callback.from_user.id, record["access_token"])
        text += f"\nLogged in as <b>{escape(record.get('email') or '')}</b>."
    elif flow_name == "signup":
        text += f"\n\nSent to: <b>{escape(record.get('email') or 'your email')}</b>\nAfter verifying, use /login."
    elif flow_name == "listing":
        text += f"\n\n<b>{escape(record.get('name', ''))}</b> · {card.format_price(wizard.form)}"
    elif flow_name == "profile":
        text += f"\n\n@{escape(record.get('username', ''))} · {escape(record.get('university', ''))}"

    logger.info(f"User {callback.from_user.id} completed flow '{flow_name}'")
    sessions.close(_key(callback))
    await state.clear()
    await callback.message.edit_text(text, reply_markup=keyboards.get_menu_kb(), parse_mode="HTML")


# --- Повідомлення ---

@router.message(WizardFSM.entering_value, F.text)
async def process_field_value(
    message: Message,
    state: FSMContext,
    sessions: WizardSessions,
    auth_sessions: AuthSessions,
    backend: Backend,
):
    wizard = sessions.get(_key(message))
    if wizard is None:
        await state.clear()
        await message.answer(EXPIRED_TEXT)
        return

    data = await state.get_data()
    name = data.get("pending_field")
    field = wizard.active_field(name) if name else None
    if field is None:
        await state.set_state(WizardFSM.filling)
        await show_step(message, wizard)
        return

    if field.kind == "password":
        value = message.text
        try:
            await message.delete()
        except TelegramBadRequest as e:
            logger.warning(f"Could not delete password message: {e}")
    else:
        value = message.text.strip()
        logger.info(f"User {message.from_user.id} entered {name}: {value}")

    if name == "username":
        records = backend.for_token(auth_sessions.token(message.from_user.id)).records
        try:
            await flows.update_username(wizard, records, value, data.get("user_id") or "")
        except BackendError as e:
            logger.error(f"Error checking username: {e}", exc_info=True)
            wizard.banner = "Error checking username availability"
    else:
        wizard.set_field(name, value)

    await state.set_state(WizardFSM.filling)
    await state.update_data(pending_field=None)
    await show_step(message, wizard)


@router.message(ACTIVE_STATES, F.photo | F.document)
async def process_upload(message: Message, sessions: WizardSessions):
    wizard = sessions.get(_key(message))
    if wizard is None:
        await message.answer(EXPIRED_TEXT)
        return
    if not wizard.step.accepts_assets:
        await message.answer("⚠️ Photos can't be added on this step.")
        return

    if message.photo:
        photo = message.photo[-1]  # найбільший розмір
        file_id, name, content_type = photo.file_id, f"{photo.file_unique_id}.jpg", "image/jpeg"
    else:
        doc = message.document
        file_id, name, content_type = doc.file_id, doc.file_name or doc.file_unique_id, doc.mime_type or ""

    try:
        buffer = await message.bot.download(file_id)
    except TelegramBadRequest as e:
        logger.warning(f"User {message.from_user.id} sent a file that could not be downloaded: {e}")
        await message.answer(f"⚠️ Could not download this file: {escape(str(e))}")
        return

    if wizard.add_files([LocalFile(name, content_type, buffer.read())]):
        logger.info(f"User {message.from_user.id} staged {name} ({len(wizard.staging)}/{wizard.staging.max_count})")
    await show_step(message, wizard)


@router.message(WizardFSM.submitting)
async def process_message_while_submitting(message: Message):
    await message.answer("⏳ Submitting, please wait...")


@router.message(WizardFSM.filling)
async def process_stray_message(message: Message, sessions: WizardSessions):
    wizard = sessions.get(_key(message))
    if wizard is None:
        await message.answer(EXPIRED_TEXT)
        return
    await message.answer("👆 Use the buttons to fill in the form, or /cancel to stop.")
    await show_step(message, wizard)


@router.callback_query()
async def process_unknown_callback(callback: CallbackQuery):
    logger.warning(f"User {callback.from_user.id} triggered unknown or expired callback: {callback.data}")
    await callback.answer("This button is no longer active. Use /start to begin again.", show_alert=True)
