import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from errors import StagingError, SubmissionError, ValidationError
from staging import MB, AssetStaging, PreviewRegistry
from submission import SubmissionOrchestrator, SubmissionPlan, SubmissionResult

logger = logging.getLogger(__name__)

FormState = Dict[str, Any]
ValidationErrors = Dict[str, str]

STEP_BANNER = "Please fix the highlighted fields before continuing."


@dataclass(frozen=True)
class Field:
    """
    Опис одного поля форми для відображення.
    kind: text | password | choice | toggle. Для choice це пари (значення, підпис).
    """
    name: str
    label: str
    kind: str = "text"
    choices: Tuple[Tuple[str, str], ...] = ()
    required: bool = False
    hint: str = ""

    def choice_label(self, value: Any) -> str:
        for code, label in self.choices:
            if code == value:
                return label
        return str(value)


@dataclass(frozen=True)
class Rule:
    """Предикат над усією формою. Якщо check повертає False, поле field отримує message."""
    field: str
    check: Callable[[FormState], bool]
    message: str


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple)):
        return len(value) == 0
    return False


def required(name: str, message: str) -> Rule:
    return Rule(name, lambda form: not is_blank(form.get(name)), message)


@dataclass(frozen=True)
class Step:
    name: str
    title: str
    fields: Tuple[Field, ...] = ()
    rules: Tuple[Rule, ...] = ()
    accepts_assets: bool = False
    description: str = ""

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]


@dataclass(frozen=True)
class FlowConfig:
    """Конфігурація одного сценарію (оголошення, профіль, реєстрація, вхід)."""
    name: str
    title: str
    steps: Tuple[Step, ...]
    initial: Mapping[str, Any] = field(default_factory=dict)
    max_assets: int = 5
    max_asset_bytes: int = 5 * MB
    submit_label: str = "Submit"
    success_text: str = "Done!"

    def __post_init__(self):
        if not self.steps:
            raise ValueError(f"Flow '{self.name}' має містити хоча б один крок")

    @property
    def field_names(self) -> List[str]:
        return [name for step in self.steps for name in step.field_names]


def validate_step(step: Step, form: Mapping[str, Any]) -> ValidationErrors:
    """
    Чиста функція: (крок, форма) -> помилки.
    Правила перевіряються в порядку оголошення, перше повідомлення для поля виграє.
    """
    errors: ValidationErrors = {}
    for rule in step.rules:
        if rule.field in errors:
            continue
        if not rule.check(form):
            errors[rule.field] = rule.message
    return errors


class Wizard:
    """
    Багатокроковий майстер: сховище полів, валідація, навігація по кроках,
    підготовка файлів та відправка. Один екземпляр на одного користувача.
    """

    def __init__(
        self,
        config: FlowConfig,
        values: Optional[Mapping[str, Any]] = None,
        staging: Optional[AssetStaging] = None,
    ):
        self.config = config
        self.form: FormState = dict(config.initial)
        if values:
            self.form.update(values)
        self.errors: ValidationErrors = {}
        self.banner: Optional[str] = None
        self.asset_error: Optional[str] = None
        self.index = 0
        if staging is None:
            staging = AssetStaging(
                PreviewRegistry(),
                max_count=config.max_assets,
                max_bytes=config.max_asset_bytes,
            )
        self.staging = staging
        self.submission: Optional[SubmissionOrchestrator] = None
        self.closed = False

    # --- Поля та валідація ---

    @property
    def step(self) -> Step:
        return self.config.steps[self.index]

    @property
    def step_count(self) -> int:
        return len(self.config.steps)

    @property
    def is_last_step(self) -> bool:
        return self.index == self.step_count - 1

    def fields(self) -> Tuple[Field, ...]:
        return self.step.fields

    def active_field(self, name: str) -> Optional[Field]:
        """Поле з таким ім'ям на поточному кроці або None (кнопка зі старого повідомлення)."""
        for f in self.step.fields:
            if f.name == name:
                return f
        return None

    def get(self, name: str, default: Any = None) -> Any:
        return self.form.get(name, default)

    def set_field(self, name: str, value: Any) -> ValidationErrors:
        if name not in self.config.field_names and name not in self.config.initial:
            raise KeyError(f"Unknown field '{name}' for flow '{self.config.name}'")
        self.form[name] = value
        self.errors = self.validate()
        return self.errors

    def toggle(self, name: str) -> bool:
        value = not bool(self.form.get(name))
        self.set_field(name, value)
        return value

    def validate(self) -> ValidationErrors:
        return validate_step(self.step, self.form)

    def is_step_valid(self) -> bool:
        return not self.validate()

    def ensure_step_valid(self) -> None:
        errors = self.validate()
        self.errors = errors
        if errors:
            raise ValidationError(errors)

    def ensure_all_steps_valid(self) -> None:
        """
        Перевірка всіх кроків перед відправкою. При помилці майстер стає на перший невалідний крок.
        """
        for index, step in enumerate(self.config.steps):
            errors = validate_step(step, self.form)
            if errors:
                self.index = index
                self.errors = errors
                self.banner = STEP_BANNER
                logger.info(f"Flow {self.config.name}: submit sent back to step '{step.name}' by {sorted(errors)}")
                raise ValidationError(errors)
        self.errors = {}

    # --- Навігація ---

    async def advance(self) -> bool:
        """
        Перехід на наступний крок. Якщо крок не валідний, залишаємось і показуємо помилки.
        З останнього кроку замість переходу запускається відправка.
        """
        try:
            self.ensure_step_valid()
        except ValidationError as e:
            self.banner = STEP_BANNER
            logger.info(f"Flow {self.config.name}: step '{self.step.name}' blocked by {sorted(e.errors)}")
            return False

        if self.is_last_step:
            result = await self.submit()
            return result.ok

        self.index += 1
        self.errors = {}
        self.banner = None
        self.asset_error = None
        return True

    def retreat(self) -> bool:
        self.banner = None
        self.errors = {}
        self.asset_error = None
        if self.index == 0:
            return False
        self.index -= 1
        return True

    # --- Файли ---

    def add_files(self, files: Sequence[Any]) -> bool:
        try:
            self.staging.add_files(files)
        except StagingError as e:
            self.asset_error = str(e)
            logger.warning(f"Flow {self.config.name}: files rejected: {e}")
            return False
        self.asset_error = None
        return True

    def remove_asset(self, index: int) -> bool:
        try:
            self.staging.remove_at(index)
        except StagingError as e:
            self.asset_error = str(e)
            return False
        self.asset_error = None
        return True

    # --- Відправка ---

    def attach(self, plan: SubmissionPlan) -> None:
        self.submission = SubmissionOrchestrator(self, plan)

    async def submit(self) -> SubmissionResult:
        if self.submission is None:
            raise SubmissionError(f"Flow '{self.config.name}' has no submission plan attached")
        return await self.submission.submit()

    @property
    def completed(self) -> bool:
        return self.submission is not None and self.submission.result.is_success

    def teardown(self) -> None:
        """Звільняє всі локальні посилання на прев'ю. Викликається при виході з майстра."""
        if self.closed:
            return
        self.staging.clear()
        self.closed = True
