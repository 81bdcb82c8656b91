import io
import unittest
from PIL import Image
from backend import Backend, User
from bot.render import render_step, render_value
from bot.sessions import AuthSessions, WizardSessions, build_wizard, require_user
from config import Settings
from engine import Field
from errors import AuthRequiredError
from staging import LocalFile

def make_image():
    buffer = io.BytesIO()
    Image.new("RGB", (10, 10)).save(buffer, format="PNG")
    return LocalFile("a.png", "image/png", buffer.getvalue())

class FakeAuth:

    def __init__(self, valid_token="good", access_token=None):
        self.valid_token = valid_token
        self.access_token = access_token

    def with_token(self, access_token):
        return FakeAuth(self.valid_token, access_token)

    async def get_current_user(self):
        if self.access_token == self.valid_token:
            return User(id="u-1", email="a@uni.edu")
        return None

def make_backend():
    return Backend(FakeAuth(), storage=None, records=None)

class TestSessions(unittest.IsolatedAsyncioTestCase):

    async def test_require_user(self):
        auth_sessions = AuthSessions()
        with self.assertRaises(AuthRequiredError):
            await require_user(make_backend(), auth_sessions, 100)

        auth_sessions.login(100, "good")
        scoped, user = await require_user(make_backend(), auth_sessions, 100)
        self.assertEqual(user.id, "u-1")
        self.assertEqual(scoped.auth.access_token, "good")

    async def test_expired_token_logs_out(self):
        auth_sessions = AuthSessions()
        auth_sessions.login(100, "stale")
        with self.assertRaises(AuthRequiredError):
            await require_user(make_backend(), auth_sessions, 100)
        self.assertIsNone(auth_sessions.token(100))

    def test_starting_new_flow_tears_down_old_one(self):
        sessions = WizardSessions()
        old = build_wizard("listing", Settings(), make_backend())
        old.add_files([make_image()])
        registry = old.staging.registry
        sessions.start((1, 1), old)

        sessions.start((1, 1), build_wizard("login", Settings(), make_backend()))

        self.assertTrue(old.closed)
        self.assertEqual(len(registry), 0)
        self.assertEqual(len(sessions), 1)

        sessions.close_all()
        self.assertEqual(len(sessions), 0)

    def test_build_wizard(self):
        settings = Settings(max_images=3)
        wizard = build_wizard("listing", settings, make_backend())
        self.assertEqual(wizard.staging.max_count, 3)
        self.assertIsNotNone(wizard.submission)
        with self.assertRaises(AuthRequiredError):
            build_wizard("profile", settings, make_backend())
        with self.assertRaises(ValueError):
            build_wizard("orders", settings, make_backend())

class TestRender(unittest.TestCase):

    def test_password_is_masked(self):
        field = Field("password", "Password", kind="password")
        self.assertNotIn("hunter22", render_value(field, "hunter22"))
        self.assertEqual(render_value(Field("isFree", "Free", kind="toggle"), True), "Yes")

    def test_errors_and_banner_are_shown(self):
        wizard = build_wizard("listing", Settings(), make_backend())
        wizard.set_field("itemName", "<b>Lamp</b>")
        text = render_step(wizard)
        self.assertIn("&lt;b&gt;Lamp&lt;/b&gt;", text)
        self.assertIn("Category is required", text)
        self.assertIn("Step 1/3", text)
        self.assertIn("Photos:</b> 0/5", text)

if __name__ == '__main__':
    unittest.main()
