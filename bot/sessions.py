import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from backend import Backend, User
from config import Settings
from engine import Wizard
from errors import AuthRequiredError
import flows

logger = logging.getLogger(__name__)

SessionKey = Tuple[int, int]


class WizardSessions:
    """Активні майстри: один на пару (chat_id, user_id). Живуть у пам'яті процесу."""

    def __init__(self):
        self._wizards: Dict[SessionKey, Wizard] = {}

    def get(self, key: SessionKey) -> Optional[Wizard]:
        return self._wizards.get(key)

    def start(self, key: SessionKey, wizard: Wizard) -> Wizard:
        self.close(key)
        self._wizards[key] = wizard
        logger.info(f"Session {key}: started flow '{wizard.config.name}'")
        return wizard

    def close(self, key: SessionKey) -> None:
        wizard = self._wizards.pop(key, None)
        if wizard is not None:
            wizard.teardown()
            logger.info(f"Session {key}: closed flow '{wizard.config.name}'")

    def close_all(self) -> None:
        for key in list(self._wizards):
            self.close(key)

    def __len__(self) -> int:
        return len(self._wizards)


class AuthSessions:
    """Токени входу: Telegram user id -> access token бекенду."""

    def __init__(self):
        self._tokens: Dict[int, str] = {}

    def login(self, telegram_id: int, access_token: str) -> None:
        self._tokens[telegram_id] = access_token

    def logout(self, telegram_id: int) -> bool:
        return self._tokens.pop(telegram_id, None) is not None

    def token(self, telegram_id: int) -> Optional[str]:
        return self._tokens.get(telegram_id)


async def require_user(backend: Backend, auth_sessions: AuthSessions, telegram_id: int) -> Tuple[Backend, User]:
    """Бекенд, прив'язаний до користувача, та сам користувач. Без входу буде AuthRequiredError."""
    token = auth_sessions.token(telegram_id)
    if not token:
        raise AuthRequiredError("Please log in to continue")
    scoped = backend.for_token(token)
    user = await scoped.auth.get_current_user()
    if user is None:
        auth_sessions.logout(telegram_id)
        raise AuthRequiredError("Your session has expired, please log in again")
    return scoped, user


def build_wizard(
    flow_name: str,
    settings: Settings,
    backend: Backend,
    user: Optional[User] = None,
    values: Optional[Mapping[str, Any]] = None,
) -> Wizard:
    """Створює майстер потрібного сценарію та прив'язує до нього план відправки."""
    if flow_name == "listing":
        config = flows.listing_flow(settings.max_images, settings.max_image_mb)
        plan = flows.listing_plan(backend, user.id if user else None)
    elif flow_name == "profile":
        if user is None:
            raise AuthRequiredError("Please log in to continue")
        config = flows.profile_flow(settings.max_image_mb)
        plan = flows.profile_plan(backend, user.id, settings.site_url)
    elif flow_name == "signup":
        config = flows.signup_flow()
        plan = flows.signup_plan(backend, redirect_to=settings.site_url if settings.backend == "supabase" else None)
    elif flow_name == "login":
        config = flows.login_flow()
        plan = flows.login_plan(backend)
    else:
        raise ValueError(f"Unknown flow: {flow_name}")

    wizard = Wizard(config, values=values)
    wizard.attach(plan)
    return wizard
