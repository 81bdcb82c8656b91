import sqlite3
import logging

logger = logging.getLogger(__name__)

DB_PATH = "marketplace.db"

def init_db(db_path: str = DB_PATH) -> None:
    """Ініціалізація локальної бази даних та створення таблиць, якщо вони не існують."""
    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()

    try:
        # 1. Таблиця користувачів (локальна заміна Supabase Auth)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT UNIQUE NOT NULL,
                password_hash TEXT NOT NULL,
                token TEXT UNIQUE NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # 2. Профілі студентів. Один профіль на користувача (upsert по user_id)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS profiles (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT UNIQUE NOT NULL,
                name TEXT,
                university TEXT,
                profile_photo TEXT,
                username TEXT UNIQUE,
                bio TEXT,
                gender TEXT,
                updated_at TEXT
            )
        """)

        # 3. Оголошення. Теги та зображення зберігаються як JSON-масиви
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS listings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT,
                name TEXT NOT NULL,
                category TEXT NOT NULL,
                condition TEXT NOT NULL,
                condition_notes TEXT,
                price REAL NOT NULL DEFAULT 0,
                description TEXT NOT NULL,
                tags TEXT NOT NULL DEFAULT '[]',
                hostel TEXT,
                delivery_option TEXT NOT NULL,
                is_digital INTEGER NOT NULL DEFAULT 0,
                is_free INTEGER NOT NULL DEFAULT 0,
                images TEXT NOT NULL DEFAULT '[]',
                created_at TEXT
            )
        """)

        conn.commit()
        logger.info("Базу даних успішно ініціалізовано.")
    except sqlite3.Error as e:
        logger.error(f"Помилка при ініціалізації бази даних: {e}")
        conn.rollback()
        raise
    finally:
        conn.close()

if __name__ == "__main__":
    # Налаштування логування для автономного запуску
    logging.basicConfig(level=logging.INFO)
    init_db()
