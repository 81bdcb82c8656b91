from aiogram.fsm.state import State, StatesGroup

class WizardFSM(StatesGroup):
    """
    Стани розмови під час заповнення будь-якої форми.
    Сам крок форми зберігається у Wizard, тут лише режим вводу.
    """
    filling = State()          # Показано крок, чекаємо натискання кнопок або фото
    entering_value = State()   # Чекаємо текст для поля pending_field
    submitting = State()       # Йде відправка, нові дії ігноруються
