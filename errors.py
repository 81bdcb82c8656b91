from typing import Dict, Optional


class MarketplaceError(Exception):
    """Базовий клас для всіх помилок застосунку."""


class ValidationError(MarketplaceError):
    """Поля поточного кроку не пройшли перевірку. Обробляється всередині майстра."""

    def __init__(self, errors: Dict[str, str]):
        self.errors = dict(errors)
        super().__init__("; ".join(self.errors.values()) or "Validation failed")


class StagingError(MarketplaceError):
    """Файл відхилено при виборі (кількість, тип або розмір)."""


class BackendError(MarketplaceError):
    """Зовнішній сервіс (auth, storage, БД) повернув помилку."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class SubmissionError(MarketplaceError):
    """Помилка під час відправки форми. Можна повторити submit()."""


class AuthRequiredError(MarketplaceError):
    """Немає авторизованого користувача, потрібен вхід."""
