import logging
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from errors import SubmissionError, ValidationError
from staging import LocalFile

logger = logging.getLogger(__name__)


class SubmissionStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


class SubmissionStage(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"      # прев'ю -> байти файлу
    UPLOADING = "uploading"      # завантаження у сховище
    LINKING = "linking"          # отримання публічного URL
    BUILDING = "building"        # формування запису
    PERSISTING = "persisting"    # запис у БД / auth
    DONE = "done"


@dataclass
class SubmissionResult:
    status: SubmissionStatus = SubmissionStatus.IDLE
    record: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is SubmissionStatus.SUCCESS

    @property
    def is_success(self) -> bool:
        return self.ok

    @property
    def is_pending(self) -> bool:
        return self.status is SubmissionStatus.PENDING


def generate_object_key(file: LocalFile, prefix: str = "") -> str:
    """Унікальне ім'я об'єкта: мітка часу (мс) + випадковий суфікс + розширення."""
    return f"{prefix}{int(time.time() * 1000)}-{secrets.token_hex(6)}.{file.extension}"


@dataclass
class SubmissionPlan:
    """
    Що саме робити при відправці конкретної форми.
    build_record(form, urls) -> запис; persist(record) -> результат зовнішнього виклику.
    """
    build_record: Callable[[Mapping[str, Any], List[str]], Dict[str, Any]]
    persist: Callable[[Dict[str, Any]], Awaitable[Any]]
    storage: Any = None
    bucket: str = ""
    key_for: Callable[[LocalFile], str] = field(default=generate_object_key)


class SubmissionOrchestrator:
    """
    Послідовна відправка: файли по одному -> публічні URL -> запис.
    Якщо будь-який етап падає, решта не виконується, а стан форми не змінюється.
    """

    def __init__(self, wizard, plan: SubmissionPlan):
        self.wizard = wizard
        self.plan = plan
        self.result = SubmissionResult()
        self.stage = SubmissionStage.IDLE
        self.attempts = 0

    @property
    def status(self) -> SubmissionStatus:
        return self.result.status

    def reset(self) -> None:
        """FAILURE -> IDLE, щоб можна було спробувати ще раз."""
        if self.result.status is SubmissionStatus.FAILURE:
            self.result = SubmissionResult()
            self.stage = SubmissionStage.IDLE

    async def submit(self) -> SubmissionResult:
        wizard = self.wizard
        if self.result.status in (SubmissionStatus.PENDING, SubmissionStatus.SUCCESS):
            logger.warning(f"Flow {wizard.config.name}: submit ignored, status is {self.result.status.value}")
            return self.result

        if not wizard.is_last_step:
            raise SubmissionError("Submission is only available on the final step")

        try:
            wizard.ensure_all_steps_valid()
        except ValidationError:
            return self.result

        self.reset()
        self.attempts += 1
        self.result = SubmissionResult(SubmissionStatus.PENDING)
        wizard.banner = None

        try:
            urls = await self._upload_assets()

            self.stage = SubmissionStage.BUILDING
            record = self.plan.build_record(dict(wizard.form), urls)

            self.stage = SubmissionStage.PERSISTING
            stored = await self.plan.persist(record)
        except Exception as e:
            logger.error(
                f"Flow {wizard.config.name}: submission failed at stage '{self.stage.value}': {e}",
                exc_info=True,
            )
            message = str(e) or "An error occurred while submitting"
            self.result = SubmissionResult(SubmissionStatus.FAILURE, error=message)
            wizard.banner = message
            return self.result

        self.stage = SubmissionStage.DONE
        if isinstance(stored, dict):
            record = stored
        self.result = SubmissionResult(SubmissionStatus.SUCCESS, record=record)
        logger.info(f"Flow {wizard.config.name}: submitted successfully with {len(urls)} asset(s)")
        return self.result

    async def _upload_assets(self) -> List[str]:
        staging = self.wizard.staging
        if not len(staging):
            return []

        self.stage = SubmissionStage.RESOLVING
        files = [staging.registry.resolve(ref) for ref in staging.refs]

        if self.plan.storage is None:
            raise SubmissionError("No storage configured for file uploads")

        urls = []
        for number, file in enumerate(files, start=1):
            key = self.plan.key_for(file)
            self.stage = SubmissionStage.UPLOADING
            logger.info(f"Uploading file {number}/{len(files)} to {self.plan.bucket}/{key}")
            await self.plan.storage.upload(self.plan.bucket, key, file.data, file.content_type)

            self.stage = SubmissionStage.LINKING
            urls.append(self.plan.storage.get_public_url(self.plan.bucket, key))
        return urls
