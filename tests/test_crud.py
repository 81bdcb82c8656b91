import os
import threading
import tempfile
import unittest
from unittest import mock
from crud import (
    SQLiteRecordStore, create_user, get_user_by_email, get_user_by_token,
    insert_record, select_records, upsert_record,
)
from database import init_db
from errors import BackendError

def listing(**overrides):
    record = {
        "name": "Desk Lamp",
        "category": "Hostel Essentials",
        "condition": "Like New",
        "price": 250.0,
        "description": "USB powered",
        "tags": ["lamp", "desk"],
        "delivery_option": "pickup",
        "is_digital": False,
        "is_free": False,
        "images": ["https://cdn/1.jpeg"],
    }
    record.update(overrides)
    return record

class TestCrud(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db = os.path.join(self.tmp.name, "test.db")
        init_db(self.db)

    def tearDown(self):
        self.tmp.cleanup()

    def test_insert_decodes_json_and_bool_columns(self):
        stored = insert_record("listings", listing(is_free=True), db_path=self.db)
        self.assertEqual(stored["id"], 1)
        self.assertEqual(stored["tags"], ["lamp", "desk"])
        self.assertEqual(stored["images"], ["https://cdn/1.jpeg"])
        self.assertIs(stored["is_free"], True)
        self.assertIs(stored["is_digital"], False)

    def test_unknown_table_and_column(self):
        with self.assertRaises(BackendError):
            insert_record("orders", {"name": "x"}, db_path=self.db)
        with self.assertRaises(BackendError) as ctx:
            insert_record("listings", listing(colour="red"), db_path=self.db)
        self.assertEqual(ctx.exception.status, 400)

    def test_upsert_updates_existing_profile(self):
        upsert_record("profiles", {"user_id": "1", "name": "Asha", "username": "asha"}, "user_id", db_path=self.db)
        row = upsert_record("profiles", {"user_id": "1", "name": "Asha K", "username": "asha"}, "user_id", db_path=self.db)
        self.assertEqual(row["name"], "Asha K")
        self.assertEqual(len(select_records("profiles", db_path=self.db)), 1)

    def test_duplicate_username_is_conflict(self):
        upsert_record("profiles", {"user_id": "1", "username": "asha"}, "user_id", db_path=self.db)
        with self.assertRaises(BackendError) as ctx:
            upsert_record("profiles", {"user_id": "2", "username": "asha"}, "user_id", db_path=self.db)
        self.assertEqual(ctx.exception.status, 409)

    def test_select_with_neq_filter(self):
        upsert_record("profiles", {"user_id": "1", "username": "asha"}, "user_id", db_path=self.db)
        upsert_record("profiles", {"user_id": "2", "username": "ravi"}, "user_id", db_path=self.db)

        rows = select_records("profiles", {"username": "asha", "user_id": ("neq", "1")}, columns="username", db_path=self.db)
        self.assertEqual(rows, [])
        rows = select_records("profiles", {"username": "asha", "user_id": ("neq", "2")}, columns="username", db_path=self.db)
        self.assertEqual(rows, [{"username": "asha"}])

        with self.assertRaises(BackendError):
            select_records("profiles", {"user_id": ("like", "1")}, db_path=self.db)

    def test_users(self):
        user_id = create_user("a@uni.edu", "hash", db_path=self.db)
        user = get_user_by_email("a@uni.edu", db_path=self.db)
        self.assertEqual(user["id"], user_id)
        self.assertEqual(get_user_by_token(user["token"], db_path=self.db)["email"], "a@uni.edu")
        self.assertIsNone(get_user_by_email("b@uni.edu", db_path=self.db))
        with self.assertRaises(BackendError):
            create_user("a@uni.edu", "hash", db_path=self.db)

class TestSQLiteRecordStore(unittest.IsolatedAsyncioTestCase):

    async def test_store_contract(self):
        with tempfile.TemporaryDirectory() as tmp:
            db = os.path.join(tmp, "store.db")
            init_db(db)
            store = SQLiteRecordStore(db)
            stored = await store.insert("listings", listing())
            rows = await store.select("listings", {"id": stored["id"]})
            self.assertEqual(rows[0]["name"], "Desk Lamp")
            await store.upsert("profiles", {"user_id": "9", "bio": "hi"}, on_conflict="user_id")
            self.assertEqual((await store.select("profiles", {"user_id": "9"}, columns="bio"))[0]["bio"], "hi")

    async def test_sqlite_runs_outside_event_loop_thread(self):
        seen = []

        def fake_select(table, filters=None, columns="*", db_path=None):
            seen.append(threading.get_ident())
            return []

        store = SQLiteRecordStore("unused.db")
        with mock.patch("crud.select_records", fake_select):
            self.assertEqual(await store.select("profiles"), [])
        self.assertEqual(len(seen), 1)
        self.assertNotEqual(seen[0], threading.get_ident())

if __name__ == '__main__':
    unittest.main()
