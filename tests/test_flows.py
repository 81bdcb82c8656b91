import unittest
from backend import AuthSession, User
from engine import Wizard, validate_step
from errors import BackendError
from flows import (
    build_listing_record, build_profile_record, check_username, default_avatar, load_profile,
    login_flow, login_plan, profile_flow, profile_plan, signup_flow, signup_plan, split_tags, update_username,
)
from submission import SubmissionStatus

class FakeRecords:

    def __init__(self, rows=None):
        self.rows = rows or []
        self.selects = []
        self.upserts = []

    async def select(self, table, filters=None, columns="*"):
        self.selects.append((table, dict(filters or {}), columns))
        result = []
        for row in self.rows:
            ok = True
            for name, value in (filters or {}).items():
                if isinstance(value, tuple):
                    ok = ok and row.get(name) != value[1]
                else:
                    ok = ok and row.get(name) == value
            if ok:
                result.append(row)
        return result

    async def upsert(self, table, record, on_conflict):
        self.upserts.append((table, record, on_conflict))
        return record

class FakeAuth:

    def __init__(self, existing=()):
        self.existing = set(existing)

    async def sign_up(self, email, password, redirect_to=None):
        if email in self.existing:
            return User(id="", email=email, identities=[])
        return User(id="new-id", email=email, identities=[{"provider": "email"}])

    async def sign_in(self, email, password):
        return AuthSession(access_token="token-123", user=User(id="u-7", email=email))

class FakeBackend:

    def __init__(self, records=None, auth=None):
        self.records = records or FakeRecords()
        self.auth = auth or FakeAuth()
        self.storage = None

class TestListingRecord(unittest.TestCase):

    def test_record_coercion(self):
        form = {
            "itemName": "  Calculator ",
            "category": "Electronics",
            "condition": "Used - Good",
            "conditionNotes": "",
            "price": "499,50",
            "description": "Casio fx-991",
            "tags": "casio, exam,, calculator ",
            "hostel": "Block A",
            "deliveryOption": "delivery",
            "isDigital": False,
            "isFree": False,
        }
        record = build_listing_record(form, ["https://cdn/1.jpeg"], user_id="u-1")
        self.assertEqual(record["name"], "Calculator")
        self.assertEqual(record["price"], 499.5)
        self.assertEqual(record["tags"], ["casio", "exam", "calculator"])
        self.assertIsNone(record["condition_notes"])
        self.assertEqual(record["hostel"], "Block A")
        self.assertEqual(record["images"], ["https://cdn/1.jpeg"])
        self.assertEqual(record["user_id"], "u-1")
        self.assertIn("created_at", record)

    def test_split_tags(self):
        self.assertEqual(split_tags(""), [])
        self.assertEqual(split_tags(None), [])
        self.assertEqual(split_tags(" a , b "), ["a", "b"])

class TestProfileFlow(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.flow = profile_flow()
        self.steps = {step.name: step for step in self.flow.steps}

    def test_username_rules(self):
        step = self.steps["username"]
        self.assertEqual(
            validate_step(step, {"username": "ab"}),
            {"username": "Username must be 3-15 characters, using letters, numbers, or underscores"},
        )
        self.assertEqual(
            validate_step(step, {"username": "asha_k", "usernameAvailable": False}),
            {"username": "Username is already taken"},
        )
        self.assertEqual(
            validate_step(step, {"username": "asha_k", "usernameAvailable": None}),
            {"username": "Please choose a valid, unique username"},
        )
        self.assertEqual(validate_step(step, {"username": "asha_k", "usernameAvailable": True}), {})

    def test_bio_length(self):
        step = self.steps["bio"]
        self.assertEqual(validate_step(step, {"bio": "x" * 150}), {})
        self.assertIn("bio", validate_step(step, {"bio": "x" * 151}))
        self.assertIn("bio", validate_step(step, {"bio": ""}))

    def test_photo_step_allows_single_image(self):
        self.assertEqual(self.flow.max_assets, 1)
        self.assertTrue(self.steps["photo"].accepts_assets)

    async def test_check_username(self):
        records = FakeRecords(rows=[{"username": "taken", "user_id": "other"}, {"username": "mine", "user_id": "me"}])
        self.assertFalse(await check_username(records, "taken", "me"))
        self.assertTrue(await check_username(records, "mine", "me"))
        self.assertTrue(await check_username(records, "fresh_name", "me"))
        # Невірний формат, запиту немає
        calls = len(records.selects)
        self.assertIsNone(await check_username(records, "no spaces!", "me"))
        self.assertEqual(len(records.selects), calls)

    async def test_failed_username_check_leaves_name_unverified(self):
        class BrokenRecords:
            async def select(self, table, filters=None, columns="*"):
                raise BackendError("Request to /rest/v1/profiles timed out after 30s", 504)

        wizard = Wizard(self.flow, values={"username": "asha_k", "usernameAvailable": True})
        wizard.index = 2
        with self.assertRaises(BackendError):
            await update_username(wizard, BrokenRecords(), "new_name", "me")

        self.assertEqual(wizard.get("username"), "new_name")
        self.assertIsNone(wizard.get("usernameAvailable"))
        self.assertEqual(wizard.validate(), {"username": "Please choose a valid, unique username"})

    async def test_update_username(self):
        wizard = Wizard(self.flow)
        wizard.index = 2
        records = FakeRecords(rows=[{"username": "taken", "user_id": "other"}])
        self.assertFalse(await update_username(wizard, records, "taken", "me"))
        self.assertEqual(wizard.errors, {"username": "Username is already taken"})
        self.assertTrue(await update_username(wizard, records, "free_one", "me"))
        self.assertEqual(wizard.errors, {})

    async def test_load_profile_prefills_form(self):
        records = FakeRecords(rows=[{
            "user_id": "me", "name": "Asha", "university": "IIT", "profile_photo": "https://cdn/p.png",
            "username": "asha_k", "bio": "Hello", "gender": "Female",
        }])
        values = await load_profile(records, "me")
        self.assertEqual(values["name"], "Asha")
        self.assertEqual(values["profilePhoto"], "https://cdn/p.png")
        self.assertTrue(values["usernameAvailable"])
        self.assertEqual(await load_profile(records, "nobody"), {})

    async def test_profile_submission_upserts_with_default_avatar(self):
        backend = FakeBackend()
        wizard = Wizard(self.flow, values={
            "name": "Ravi", "university": "NIT", "username": "ravi_99",
            "usernameAvailable": True, "gender": "Male", "bio": "Cricket fan",
        })
        wizard.attach(profile_plan(backend, "user-42", site_url="https://exchangezo.app/"))
        wizard.index = wizard.step_count - 1

        result = await wizard.submit()

        self.assertTrue(result.ok)
        table, record, conflict = backend.records.upserts[0]
        self.assertEqual((table, conflict), ("profiles", "user_id"))
        self.assertEqual(record["user_id"], "user-42")
        self.assertEqual(record["profile_photo"], "https://exchangezo.app/male-avatar.png")

    def test_existing_photo_is_kept(self):
        form = {"name": "A", "university": "U", "username": "abc", "bio": "b", "gender": "Other",
                "profilePhoto": "https://cdn/old.png"}
        self.assertEqual(build_profile_record(form, [], "me")["profile_photo"], "https://cdn/old.png")
        self.assertEqual(build_profile_record(form, ["https://cdn/new.png"], "me")["profile_photo"], "https://cdn/new.png")

    def test_default_avatar(self):
        self.assertEqual(default_avatar("Male"), "/male-avatar.png")
        self.assertEqual(default_avatar("Female", "https://x.app"), "https://x.app/female-avatar.png")

class TestAccountFlows(unittest.IsolatedAsyncioTestCase):

    def test_signup_rules(self):
        step = signup_flow().steps[0]
        self.assertEqual(validate_step(step, {"email": "bad", "password": "short"}), {
            "email": "Please enter a valid email address",
            "password": "Password must be at least 8 characters",
        })
        self.assertEqual(validate_step(step, {"email": "a@uni.edu", "password": "longenough"}), {})

    async def test_signup_success(self):
        wizard = Wizard(signup_flow(), values={"email": " a@uni.edu ", "password": "longenough"})
        wizard.attach(signup_plan(FakeBackend()))
        self.assertTrue(await wizard.advance())
        self.assertEqual(wizard.submission.result.record, {"user_id": "new-id", "email": "a@uni.edu"})

    async def test_signup_existing_email(self):
        wizard = Wizard(signup_flow(), values={"email": "a@uni.edu", "password": "longenough"})
        wizard.attach(signup_plan(FakeBackend(auth=FakeAuth(existing={"a@uni.edu"}))))
        result = await wizard.submit()
        self.assertEqual(result.status, SubmissionStatus.FAILURE)
        self.assertEqual(result.error, "A user with this email already exists")

    async def test_login_returns_token(self):
        wizard = Wizard(login_flow(), values={"email": "a@uni.edu", "password": "x"})
        wizard.attach(login_plan(FakeBackend()))
        result = await wizard.submit()
        self.assertTrue(result.ok)
        self.assertEqual(result.record["access_token"], "token-123")
        self.assertEqual(result.record["user_id"], "u-7")

if __name__ == '__main__':
    unittest.main()
