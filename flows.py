"""
Конфігурації сценаріїв: оголошення, профіль, реєстрація та вхід.

Усі чотири працюють на одному рушії (engine.Wizard) і відрізняються лише
кроками, правилами та тим, що робиться при відправці (SubmissionPlan).
"""
import logging
import math
import re
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from engine import Field, FlowConfig, Rule, Step, is_blank, required
from errors import BackendError, SubmissionError
from staging import MB
from submission import SubmissionPlan, generate_object_key

logger = logging.getLogger(__name__)

CATEGORIES = [
    "Books",
    "Electronics",
    "Hostel Essentials",
    "Clothing",
    "Sports / Hobbies",
    "Digital Files",
    "Services",
    "Rental Items",
    "Event Tickets",
    "Free Items",
    "Others",
]
CONDITIONS = ["New", "Like New", "Used - Good", "Used - Acceptable"]
DELIVERY_OPTIONS = [
    ("pickup", "Campus Pickup"),
    ("delivery", "Hostel Delivery"),
    ("digital", "Digital Delivery (for digital items)"),
]
GENDERS = ["Male", "Female", "Other", "Prefer not to say"]

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
USERNAME_RE = re.compile(r"^[a-zA-Z0-9_]{3,15}$")
BIO_MAX_LENGTH = 150

LISTINGS_TABLE = "listings"
PROFILES_TABLE = "profiles"
LISTING_BUCKET = "item"
PROFILE_BUCKET = "student-market-place-profiles"


def _options(values) -> tuple:
    return tuple((v, v) for v in values)


def is_number(value: Any) -> bool:
    try:
        number = float(str(value).strip().replace(",", "."))
    except ValueError:
        return False
    return math.isfinite(number) and number >= 0


def parse_price(value: Any) -> float:
    return float(str(value).strip().replace(",", "."))


def split_tags(text: Optional[str]) -> List[str]:
    """'calculator, engineering ,' -> ['calculator', 'engineering']"""
    if not text:
        return []
    return [tag.strip() for tag in text.split(",") if tag.strip()]


def blank_to_none(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
    return None if is_blank(value) else value


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# --- Оголошення (item listing) ---

def listing_flow(max_images: int = 5, max_image_mb: int = 5) -> FlowConfig:
    details = Step(
        name="details",
        title="Item Details",
        description=f"Tell buyers what you are selling. You can also send up to {max_images} photos.",
        accepts_assets=True,
        fields=(
            Field("itemName", "Item name", required=True, hint="e.g., Scientific Calculator"),
            Field("category", "Category", kind="choice", choices=_options(CATEGORIES), required=True),
            Field("condition", "Condition", kind="choice", choices=_options(CONDITIONS), required=True),
            Field("conditionNotes", "Condition notes", hint="e.g., Minor scratches on screen"),
            Field("price", "Price", required=True, hint="e.g., 500"),
            Field("isFree", "Free item", kind="toggle"),
            Field("tags", "Tags", hint="Comma separated, e.g., calculator, engineering"),
            Field("description", "Description", required=True),
        ),
        rules=(
            required("itemName", "Item name is required"),
            required("category", "Category is required"),
            required("condition", "Condition is required"),
            Rule("price", lambda f: bool(f.get("isFree")) or not is_blank(f.get("price")), "Price is required unless free"),
            Rule("price", lambda f: bool(f.get("isFree")) or is_number(f.get("price")), "Price must be a valid number"),
            required("description", "Description is required"),
        ),
    )
    delivery = Step(
        name="delivery",
        title="Delivery & Location",
        fields=(
            Field("deliveryOption", "Delivery option", kind="choice", choices=tuple(DELIVERY_OPTIONS), required=True),
            Field("hostel", "Hostel / location", hint="e.g., Block C, Room 214"),
        ),
        rules=(required("deliveryOption", "Delivery option is required"),),
    )
    options = Step(
        name="options",
        title="Additional Options",
        description="Check everything once more and post your listing.",
        fields=(Field("isDigital", "Digital item", kind="toggle"),),
    )
    return FlowConfig(
        name="listing",
        title="Create Your Listing",
        steps=(details, delivery, options),
        initial={
            "itemName": "",
            "category": "",
            "condition": "",
            "conditionNotes": "",
            "price": "",
            "description": "",
            "tags": "",
            "hostel": "",
            "deliveryOption": "",
            "isDigital": False,
            "isFree": False,
        },
        max_assets=max_images,
        max_asset_bytes=max_image_mb * MB,
        submit_label="Post Your Listing",
        success_text="🎉 Your listing is live!",
    )


def build_listing_record(form: Mapping[str, Any], image_urls: List[str], user_id: Optional[str] = None) -> Dict[str, Any]:
    is_free = bool(form.get("isFree"))
    record = {
        "name": form["itemName"].strip(),
        "category": form["category"],
        "condition": form["condition"],
        "condition_notes": blank_to_none(form.get("conditionNotes")),
        "price": 0.0 if is_free else parse_price(form["price"]),
        "description": form["description"].strip(),
        "tags": split_tags(form.get("tags")),
        "hostel": blank_to_none(form.get("hostel")),
        "delivery_option": form["deliveryOption"],
        "is_digital": bool(form.get("isDigital")),
        "is_free": is_free,
        "images": list(image_urls),
        "created_at": now_iso(),
    }
    if user_id:
        record["user_id"] = user_id
    return record


def listing_plan(backend, user_id: Optional[str] = None) -> SubmissionPlan:
    async def persist(record: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await backend.records.insert(LISTINGS_TABLE, record)
        except BackendError as e:
            raise SubmissionError(f"Failed to create listing: {e}") from e

    return SubmissionPlan(
        build_record=lambda form, urls: build_listing_record(form, urls, user_id),
        persist=persist,
        storage=backend.storage,
        bucket=LISTING_BUCKET,
        key_for=lambda file: generate_object_key(file, prefix="public/"),
    )


# --- Профіль ---

def profile_flow(max_image_mb: int = 5) -> FlowConfig:
    photo = Step(
        name="photo",
        title="Profile Photo",
        description="Send a photo for your profile, or skip to use the default avatar.",
        accepts_assets=True,
    )
    details = Step(
        name="details",
        title="Your Details",
        fields=(
            Field("name", "Full name", required=True, hint="Your full name"),
            Field("university", "University", required=True, hint="Your university"),
        ),
        rules=(
            required("name", "Name is required"),
            required("university", "University is required"),
        ),
    )
    username = Step(
        name="username",
        title="Username",
        description="Pick a unique handle.",
        fields=(Field("username", "Username", required=True, hint="your_username"),),
        rules=(
            required("username", "Username is required"),
            Rule(
                "username",
                lambda f: bool(USERNAME_RE.match(f.get("username") or "")),
                "Username must be 3-15 characters, using letters, numbers, or underscores",
            ),
            Rule("username", lambda f: f.get("usernameAvailable") is not False, "Username is already taken"),
            Rule("username", lambda f: f.get("usernameAvailable") is True, "Please choose a valid, unique username"),
        ),
    )
    gender = Step(
        name="gender",
        title="Gender",
        fields=(Field("gender", "Gender", kind="choice", choices=_options(GENDERS), required=True),),
        rules=(required("gender", "Gender is required"),),
    )
    bio = Step(
        name="bio",
        title="Bio",
        description=f"Tell other students about yourself ({BIO_MAX_LENGTH} characters max).",
        fields=(Field("bio", "Bio", required=True),),
        rules=(
            Rule(
                "bio",
                lambda f: not is_blank(f.get("bio")) and len(f.get("bio")) <= BIO_MAX_LENGTH,
                f"Bio is required and must be {BIO_MAX_LENGTH} characters or less",
            ),
        ),
    )
    review = Step(name="review", title="All Set", description="Review your profile and save it.")
    return FlowConfig(
        name="profile",
        title="Create Your Profile",
        steps=(photo, details, username, gender, bio, review),
        initial={
            "name": "",
            "university": "",
            "username": "",
            "usernameAvailable": None,
            "bio": "",
            "gender": "",
            "profilePhoto": None,
        },
        max_assets=1,
        max_asset_bytes=max_image_mb * MB,
        submit_label="Save Profile",
        success_text="✅ Your profile has been saved.",
    )


def default_avatar(gender: str, site_url: str = "") -> str:
    name = "male-avatar.png" if gender == "Male" else "female-avatar.png"
    return f"{site_url.rstrip('/')}/{name}"


def build_profile_record(form: Mapping[str, Any], photo_urls: List[str], user_id: str, site_url: str = "") -> Dict[str, Any]:
    if photo_urls:
        photo = photo_urls[0]
    else:
        photo = form.get("profilePhoto") or default_avatar(form.get("gender", ""), site_url)
    return {
        "user_id": user_id,
        "name": form["name"].strip(),
        "university": form["university"].strip(),
        "profile_photo": photo,
        "username": form["username"].strip(),
        "bio": form["bio"].strip(),
        "gender": form["gender"],
        "updated_at": now_iso(),
    }


def profile_plan(backend, user_id: str, site_url: str = "") -> SubmissionPlan:
    async def persist(record: Dict[str, Any]) -> Dict[str, Any]:
        return await backend.records.upsert(PROFILES_TABLE, record, on_conflict="user_id")

    return SubmissionPlan(
        build_record=lambda form, urls: build_profile_record(form, urls, user_id, site_url),
        persist=persist,
        storage=backend.storage,
        bucket=PROFILE_BUCKET,
        key_for=lambda file: f"{user_id}-{int(time.time() * 1000)}.{file.extension}",
    )


async def load_profile(records, user_id: str) -> Dict[str, Any]:
    """Значення форми з уже збереженого профілю (порожній словник, якщо профілю немає)."""
    rows = await records.select(
        PROFILES_TABLE,
        {"user_id": user_id},
        columns="name, university, profile_photo, username, bio, gender",
    )
    if not rows:
        return {}
    row = rows[0]
    values = {
        "name": row.get("name") or "",
        "university": row.get("university") or "",
        "username": row.get("username") or "",
        "bio": row.get("bio") or "",
        "gender": row.get("gender") or "",
        "profilePhoto": row.get("profile_photo"),
    }
    # Власний username уже перевірений
    if values["username"]:
        values["usernameAvailable"] = True
    return values


async def check_username(records, username: str, user_id: str) -> Optional[bool]:
    """
    True: вільний, False: зайнятий, None: формат невірний (перевірка не потрібна).
    Помилку сервісу пропускаємо вгору: UI покаже її як банер.
    """
    if not USERNAME_RE.match(username or ""):
        return None
    rows = await records.select(
        PROFILES_TABLE,
        {"username": username, "user_id": ("neq", user_id)},
        columns="username",
    )
    return len(rows) == 0


async def update_username(wizard, records, username: str, user_id: str) -> Optional[bool]:
    """
    Записує username у форму та перевіряє, чи він вільний.
    До відповіді сервісу usernameAvailable = None, тож неперевірене ім'я не пройде крок.
    """
    wizard.set_field("username", username)
    wizard.set_field("usernameAvailable", None)
    available = await check_username(records, username, user_id)
    wizard.set_field("usernameAvailable", available)
    return available


# --- Реєстрація та вхід ---

def _account_step(title: str, password_rule: Rule, description: str = "") -> Step:
    return Step(
        name="account",
        title=title,
        description=description,
        fields=(
            Field("email", "Email", required=True, hint="you@university.edu"),
            Field("password", "Password", kind="password", required=True, hint="At least 8 characters"),
        ),
        rules=(
            Rule("email", lambda f: bool(EMAIL_RE.match((f.get("email") or "").strip())), "Please enter a valid email address"),
            password_rule,
        ),
    )


def signup_flow() -> FlowConfig:
    step = _account_step(
        "Create your account",
        Rule("password", lambda f: len(f.get("password") or "") >= 8, "Password must be at least 8 characters"),
        description="Join Exchangezo to buy and sell used items with fellow students.",
    )
    return FlowConfig(
        name="signup",
        title="Sign Up",
        steps=(step,),
        initial={"email": "", "password": ""},
        max_assets=0,
        submit_label="Sign Up",
        success_text="📬 Check your email for a verification link to activate your account.",
    )


def signup_plan(backend, redirect_to: Optional[str] = None) -> SubmissionPlan:
    async def persist(record: Dict[str, Any]) -> Dict[str, Any]:
        user = await backend.auth.sign_up(record["email"], record["password"], redirect_to=redirect_to)
        if not user.identities:
            raise SubmissionError("A user with this email already exists")
        logger.info(f"Signed up {record['email']} (user {user.id})")
        return {"user_id": user.id, "email": record["email"]}

    return SubmissionPlan(
        build_record=lambda form, urls: {"email": form["email"].strip(), "password": form["password"]},
        persist=persist,
    )


def login_flow() -> FlowConfig:
    step = _account_step("Log in", required("password", "Password is required"))
    return FlowConfig(
        name="login",
        title="Log In",
        steps=(step,),
        initial={"email": "", "password": ""},
        max_assets=0,
        submit_label="Log In",
        success_text="👋 Welcome back!",
    )


def login_plan(backend) -> SubmissionPlan:
    async def persist(record: Dict[str, Any]) -> Dict[str, Any]:
        session = await backend.auth.sign_in(record["email"], record["password"])
        return {"user_id": session.user.id, "email": session.user.email, "access_token": session.access_token}

    return SubmissionPlan(
        build_record=lambda form, urls: {"email": form["email"].strip(), "password": form["password"]},
        persist=persist,
    )

