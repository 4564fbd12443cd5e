from fastapi import FastAPI, APIRouter, HTTPException, Depends, Request, Response
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from pydantic import BaseModel, Field, ConfigDict
from typing import List, Optional, Tuple, Union
import uuid
from datetime import datetime, timezone
import httpx
import json
import re
import time
import uvicorn
from openai import AsyncOpenAI, APIStatusError, OpenAIError
from jose import JWTError, jwt

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Server configuration
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "5000"))
CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "http://localhost:3000")
MAX_BODY_BYTES = int(os.environ.get("MAX_BODY_BYTES", str(10 * 1024 * 1024)))  # 10 MB, images arrive inline

# Chat completion (OpenRouter speaks the OpenAI wire format)
OPENROUTER_API_KEY = os.environ.get("OPENROUTER_API_KEY", "")
OPENROUTER_BASE_URL = os.environ.get("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
OPENROUTER_MODEL = os.environ.get("OPENROUTER_MODEL", "mistralai/mistral-7b-instruct:free")
APP_REFERER = os.environ.get("APP_REFERER", "http://localhost:3000")
APP_TITLE = os.environ.get("APP_TITLE", "MediMind AI")

# Vision
GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY", "")
GOOGLE_ACCESS_TOKEN = os.environ.get("GOOGLE_ACCESS_TOKEN", "")
GEMINI_BASE_URL = os.environ.get("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta")
GEMINI_MODEL = os.environ.get("GEMINI_MODEL", "gemini-1.5-flash")

AI_TIMEOUT_SECONDS = float(os.environ.get("AI_TIMEOUT_SECONDS", "60"))

# Identity provider token verification. Tokens are issued elsewhere; we only check them.
AUTH_JWT_SECRET = os.environ.get("AUTH_JWT_SECRET", "")
AUTH_JWT_ALGORITHM = os.environ.get("AUTH_JWT_ALGORITHM", "HS256")
AUTH_JWT_AUDIENCE = os.environ.get("AUTH_JWT_AUDIENCE", "")
AUTH_JWT_ISSUER = os.environ.get("AUTH_JWT_ISSUER", "")
# When set, tokens are checked against the provider's published JWK set instead of AUTH_JWT_SECRET.
AUTH_JWKS_URL = os.environ.get("AUTH_JWKS_URL", "")
AUTH_JWKS_CACHE_SECONDS = int(os.environ.get("AUTH_JWKS_CACHE_SECONDS", "3600"))
SESSION_COOKIE_MAX_AGE = 60 * 60  # fallback when the token carries no exp

# Initialize OpenRouter client (lazy initialization)
openrouter_client = None

def get_openai_client():
    global openrouter_client
    if openrouter_client is None:
        openrouter_client = AsyncOpenAI(
            api_key=OPENROUTER_API_KEY,
            base_url=OPENROUTER_BASE_URL,
            timeout=AI_TIMEOUT_SECONDS,
            max_retries=0,
            default_headers={
                "HTTP-Referer": APP_REFERER,
                "X-Title": APP_TITLE
            }
        )
    return openrouter_client

# MongoDB connection
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ.get('DB_NAME', 'medimind')]

# Create the main app without a prefix
app = FastAPI(title="MediMind AI API")

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SYMPTOM_ANALYSIS_FAILURE = "Unable to analyze symptoms. Please try again."
IMAGE_ANALYSIS_FAILURE = "Error analyzing image"
DOCTOR_SEARCH_FAILURE = "Unable to find doctors right now. Please try again."
BODY_TOO_LARGE = "Request body too large."

MESSAGE_HISTORY_LIMIT = 500  # newest messages returned by GET /api/messages

DEFAULT_IMAGE_MIME_TYPE = "image/jpeg"

DOCTOR_FIELDS = ("name", "specialty", "address", "phone", "rating", "distance", "available")
DOCTOR_PLACEHOLDER_NAME = "AI Suggestions"

DATA_URL_PATTERN = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[^,]*)?,(?P<data>.*)$", re.DOTALL)
TIME_PATTERN = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*([AaPp]\.?\s*[Mm]\.?)?$")


class AIServiceError(Exception):
    """A downstream AI call failed. The message carries the raw detail for logs only."""

# ==================== HELPERS ====================

def normalize_hhmm(value: str) -> str:
    """Normalize time values into 24h HH:MM. Accepts 9:00, 09:00 AM, 9 pm."""
    if not value:
        return ""
    value = value.strip()
    match = TIME_PATTERN.match(value)
    if not match:
        return value
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    meridiem = re.sub(r"[\s.]", "", match.group(3) or "").lower()
    if match.group(2) is None and not meridiem:
        # A bare number is ambiguous, keep what the user typed.
        return value
    if meridiem:
        if hour < 1 or hour > 12:
            return value
        hour = hour % 12 + (12 if meridiem == "pm" else 0)
    if hour > 23 or minute > 59:
        return value
    return f"{hour:02d}:{minute:02d}"

def split_image_payload(image: Optional[str]) -> Tuple[str, str]:
    """Return (mime_type, base64_data) for a data URL or a bare base64 string."""
    value = (image or "").strip()
    match = DATA_URL_PATTERN.match(value)
    if match:
        return match.group("mime") or DEFAULT_IMAGE_MIME_TYPE, match.group("data").strip()
    if "," in value:
        value = value.split(",", 1)[1]
    return DEFAULT_IMAGE_MIME_TYPE, value.strip()

def build_symptom_prompt(symptoms: str) -> str:
    return f"As a medical assistant, analyze these symptoms and provide guidance: {symptoms}"

def build_image_prompt(symptoms: Optional[str] = None) -> str:
    prompt = (
        "Analyze this medical image and describe any visible symptoms or conditions. "
        "Provide a preliminary assessment."
    )
    symptoms = (symptoms or "").strip()
    if symptoms:
        prompt += f" The patient also reports these symptoms: {symptoms}"
    return prompt

def build_doctor_search_prompt(query: str, location: str) -> str:
    return (
        f"Suggest up to 5 doctors or clinics for \"{query}\" near {location}.\n"
        "Return strict JSON only: an array of objects with the keys "
        "\"name\", \"specialty\", \"address\", \"phone\", \"rating\", \"distance\" and \"available\". "
        "Use null for anything you do not know. Do not add commentary."
    )

def extract_json_array(text: Optional[str]) -> Optional[list]:
    """Best-effort recovery of a JSON array embedded in free-text model output."""
    if not text:
        return None
    decoder = json.JSONDecoder()
    start = text.find("[")
    while start != -1:
        try:
            parsed, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return parsed
        start = text.find("[", start + 1)
    return None

def normalize_doctor_record(item, query: str) -> Optional[dict]:
    if isinstance(item, str):
        item = {"name": item}
    if not isinstance(item, dict):
        return None
    if "specialty" not in item and "speciality" in item:
        item = {**item, "specialty": item["speciality"]}
    record = {field: item.get(field) for field in DOCTOR_FIELDS}
    name = str(record["name"] or "").strip()
    if not name:
        return None
    record["name"] = name
    record["specialty"] = record["specialty"] or query
    return record

def doctor_placeholder(raw_text: str, query: str) -> dict:
    record = {field: None for field in DOCTOR_FIELDS}
    record["name"] = DOCTOR_PLACEHOLDER_NAME
    record["specialty"] = query
    record["details"] = (raw_text or "").strip()
    return record

def parse_doctor_results(raw_text: str, query: str) -> List[dict]:
    items = extract_json_array(raw_text)
    if items is None:
        logger.warning("Doctor search reply held no JSON array, wrapping raw text")
        return [doctor_placeholder(raw_text, query)]
    doctors = [d for d in (normalize_doctor_record(item, query) for item in items) if d]
    if items and not doctors:
        logger.warning("Doctor search reply had no usable records, wrapping raw text")
        return [doctor_placeholder(raw_text, query)]
    return doctors

# ==================== AI CLIENTS ====================

async def complete_chat(messages: List[dict], **options) -> str:
    """Single chat-completion call against OpenRouter. Raises AIServiceError."""
    if not OPENROUTER_API_KEY:
        raise AIServiceError("OPENROUTER_API_KEY is not configured")
    try:
        completion = await get_openai_client().chat.completions.create(
            model=OPENROUTER_MODEL,
            messages=messages,
            **options
        )
    except APIStatusError as exc:
        raise AIServiceError(f"HTTP {exc.status_code}: {exc.body if exc.body is not None else exc.message}") from exc
    except OpenAIError as exc:
        raise AIServiceError(str(exc)) from exc

    content = completion.choices[0].message.content if completion.choices else None
    if not content or not content.strip():
        raise AIServiceError("Chat model returned an empty completion")
    return content.strip()

async def request_vision_analysis(
    image_data: str,
    mime_type: str,
    prompt: str,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> str:
    """
    Send an inline base64 image plus prompt to Gemini generateContent.
    Auth: GEMINI_API_KEY as ?key=, otherwise GOOGLE_ACCESS_TOKEN as a bearer token.
    """
    params = {}
    headers = {"Content-Type": "application/json"}
    if GEMINI_API_KEY:
        params["key"] = GEMINI_API_KEY
    elif GOOGLE_ACCESS_TOKEN:
        headers["Authorization"] = f"Bearer {GOOGLE_ACCESS_TOKEN}"
    else:
        raise AIServiceError("Neither GEMINI_API_KEY nor GOOGLE_ACCESS_TOKEN is configured")

    url = f"{GEMINI_BASE_URL.rstrip('/')}/models/{GEMINI_MODEL}:generateContent"
    payload = {
        "contents": [
            {
                "parts": [
                    {"text": prompt},
                    {"inline_data": {"mime_type": mime_type, "data": image_data}}
                ]
            }
        ]
    }
    try:
        async with httpx.AsyncClient(timeout=AI_TIMEOUT_SECONDS, transport=transport) as http:
            response = await http.post(url, params=params, headers=headers, json=payload)
            response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise AIServiceError(f"HTTP {exc.response.status_code}: {exc.response.text}") from exc
    except httpx.HTTPError as exc:
        raise AIServiceError(f"Vision request failed: {exc}") from exc

    try:
        text = response.json()["candidates"][0]["content"]["parts"][0]["text"]
    except (ValueError, KeyError, IndexError, TypeError) as exc:
        raise AIServiceError(f"Unexpected vision response: {response.text[:500]}") from exc
    if not isinstance(text, str) or not text.strip():
        raise AIServiceError("Vision model returned no text")
    return text.strip()

async def run_symptom_analysis(symptoms: str) -> str:
    return await complete_chat([{"role": "user", "content": build_symptom_prompt(symptoms)}])

async def run_image_analysis(image: str, symptoms: Optional[str] = None) -> str:
    mime_type, image_data = split_image_payload(image)
    return await request_vision_analysis(image_data, mime_type, build_image_prompt(symptoms))

async def run_doctor_search(query: str, location: str) -> List[dict]:
    raw = await complete_chat(
        [{"role": "user", "content": build_doctor_search_prompt(query, location)}],
        temperature=0
    )
    return parse_doctor_results(raw, query)

async def generate_assistant_reply(text: str, image: Optional[str]) -> str:
    """Reply text for the chat flow. Failures become the fixed user-facing string."""
    if image:
        try:
            return await run_image_analysis(image, text)
        except AIServiceError as e:
            logger.error(f"Gemini API error: {e}")
            return IMAGE_ANALYSIS_FAILURE
    try:
        return await run_symptom_analysis(text)
    except AIServiceError as e:
        logger.error(f"OpenRouter API error: {e}")
        return SYMPTOM_ANALYSIS_FAILURE

# ==================== MODELS ====================

class CurrentUser(BaseModel):
    model_config = ConfigDict(extra="ignore")
    uid: str
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None

class SessionCreate(BaseModel):
    id_token: str

class SymptomAnalysisRequest(BaseModel):
    symptoms: Optional[str] = None

class ImageAnalysisRequest(BaseModel):
    image: Optional[str] = None
    symptoms: Optional[str] = None

class DoctorSearchRequest(BaseModel):
    query: Optional[str] = None
    location: Optional[str] = None

class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: f"msg_{uuid.uuid4().hex[:12]}")
    uid: str
    type: str  # user or ai
    text: str = ""
    image: Optional[str] = None
    related_user_message_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class MessageCreate(BaseModel):
    text: Optional[str] = ""
    image: Optional[str] = None

class Medication(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: f"med_{uuid.uuid4().hex[:12]}")
    uid: str
    name: str
    time: str
    taken: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class MedicationCreate(BaseModel):
    name: Optional[str] = None
    time: Optional[str] = None

class MedicationUpdate(BaseModel):
    name: Optional[str] = None
    time: Optional[str] = None
    taken: Optional[bool] = None

# ==================== AUTHENTICATION ====================

# Cached JWK set of the identity provider, refreshed on expiry or on an unknown kid.
identity_jwks = None
identity_jwks_fetched_at = 0.0

async def load_identity_jwks(transport: Optional[httpx.AsyncBaseTransport] = None) -> dict:
    """Download the identity provider's JWK set from AUTH_JWKS_URL."""
    async with httpx.AsyncClient(timeout=10.0, transport=transport) as http:
        response = await http.get(AUTH_JWKS_URL)
        response.raise_for_status()
    jwks = response.json()
    if not isinstance(jwks, dict) or not isinstance(jwks.get("keys"), list):
        raise ValueError("JWK set response has no 'keys' list")
    return jwks

async def get_identity_jwks(force_refresh: bool = False) -> dict:
    global identity_jwks, identity_jwks_fetched_at
    expired = time.monotonic() - identity_jwks_fetched_at > AUTH_JWKS_CACHE_SECONDS
    if identity_jwks is None or expired or force_refresh:
        try:
            identity_jwks = await load_identity_jwks()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Could not load identity provider keys from {AUTH_JWKS_URL}: {e}")
            raise HTTPException(status_code=503, detail="Authentication keys unavailable")
        identity_jwks_fetched_at = time.monotonic()
        logger.info(f"Loaded {len(identity_jwks['keys'])} identity provider keys")
    return identity_jwks

async def resolve_verification_key(token: str) -> Union[str, dict]:
    """Shared secret, or the provider's JWK set when AUTH_JWKS_URL is configured."""
    if not AUTH_JWKS_URL:
        if not AUTH_JWT_SECRET:
            logger.error("Neither AUTH_JWKS_URL nor AUTH_JWT_SECRET is configured; rejecting identity token")
            raise HTTPException(status_code=503, detail="Authentication is not configured")
        return AUTH_JWT_SECRET

    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid authentication token")
    jwks = await get_identity_jwks()
    if kid and not any(key.get("kid") == kid for key in jwks["keys"]):
        # Provider rotated its keys since the last download.
        jwks = await get_identity_jwks(force_refresh=True)
    matching = [key for key in jwks["keys"] if key.get("kid") == kid] if kid else []
    return {"keys": matching or jwks["keys"]}

async def decode_identity_token(token: str) -> dict:
    """Verify an identity-provider ID token and return its claims."""
    key = await resolve_verification_key(token)
    try:
        claims = jwt.decode(
            token,
            key,
            algorithms=[AUTH_JWT_ALGORITHM],
            audience=AUTH_JWT_AUDIENCE or None,
            issuer=AUTH_JWT_ISSUER or None,
            options={"verify_aud": bool(AUTH_JWT_AUDIENCE)}
        )
    except JWTError as e:
        logger.info(f"Rejected identity token: {e}")
        raise HTTPException(status_code=401, detail="Invalid authentication token")
    uid = claims.get("user_id") or claims.get("sub")
    if not isinstance(uid, str) or not uid.strip():
        raise HTTPException(status_code=401, detail="Invalid authentication token")
    return claims

def _string_claim(claims: dict, name: str) -> Optional[str]:
    value = claims.get(name)
    return value if isinstance(value, str) else None

def user_from_claims(claims: dict) -> CurrentUser:
    return CurrentUser(
        uid=claims.get("user_id") or claims["sub"],
        email=_string_claim(claims, "email"),
        name=_string_claim(claims, "name"),
        picture=_string_claim(claims, "picture")
    )

async def get_current_user(request: Request) -> CurrentUser:
    """Get current user from identity token in cookie or Authorization header"""
    token = request.cookies.get("access_token")

    # Fallback to Authorization header
    if not token:
        auth_header = request.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.split(" ", 1)[1].strip()

    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    return user_from_claims(await decode_identity_token(token))

async def upsert_user_profile(user: CurrentUser) -> dict:
    await db.users.update_one(
        {"uid": user.uid},
        {"$set": {**user.model_dump(), "last_seen_at": datetime.now(timezone.utc)}},
        upsert=True
    )
    return await db.users.find_one({"uid": user.uid}, {"_id": 0})

# ==================== AUTH ROUTES ====================

@api_router.post("/auth/session")
async def create_session(response: Response, session: SessionCreate):
    """Exchange an identity-provider ID token for an http-only session cookie"""
    claims = await decode_identity_token(session.id_token)
    max_age = SESSION_COOKIE_MAX_AGE
    if isinstance(claims.get("exp"), (int, float)):
        max_age = max(0, int(claims["exp"] - datetime.now(timezone.utc).timestamp()))

    response.set_cookie(
        key="access_token",
        value=session.id_token,
        httponly=True,
        secure=True,
        samesite="none",
        path="/",
        max_age=max_age
    )
    profile = await upsert_user_profile(user_from_claims(claims))
    return {"message": "Session started", "user": profile}

@api_router.get("/auth/me")
async def get_me(current_user: CurrentUser = Depends(get_current_user)):
    """Get current user info"""
    return await upsert_user_profile(current_user)

@api_router.post("/auth/logout")
async def logout(response: Response):
    """Logout user"""
    response.delete_cookie(key="access_token", path="/")
    return {"message": "Logged out"}

# ==================== AI PROXY ROUTES ====================

@api_router.post("/analyze-symptoms")
async def analyze_symptoms(payload: SymptomAnalysisRequest):
    """Symptom analysis through the OpenRouter chat model"""
    symptoms = (payload.symptoms or "").strip()
    if not symptoms:
        return JSONResponse(status_code=400, content={"result": "Please describe your symptoms."})
    try:
        result = await run_symptom_analysis(symptoms)
    except AIServiceError as e:
        logger.error(f"OpenRouter API error: {e}")
        return JSONResponse(status_code=500, content={"result": SYMPTOM_ANALYSIS_FAILURE})
    return {"result": result}

@api_router.post("/analyze-image")
async def analyze_image(payload: ImageAnalysisRequest):
    """Image analysis through the Gemini vision model"""
    _, image_data = split_image_payload(payload.image)
    if not image_data:
        return JSONResponse(status_code=400, content={"result": "No image provided for analysis."})
    try:
        result = await run_image_analysis(payload.image, payload.symptoms)
    except AIServiceError as e:
        logger.error(f"Gemini API error: {e}")
        return JSONResponse(status_code=500, content={"result": IMAGE_ANALYSIS_FAILURE})
    return {"result": result}

@api_router.post("/find-doctors")
async def find_doctors(payload: DoctorSearchRequest):
    query = (payload.query or "").strip()
    location = (payload.location or "").strip()
    if not query or not location:
        return JSONResponse(status_code=400, content={"error": "Both query and location are required."})
    try:
        doctors = await run_doctor_search(query, location)
    except AIServiceError as e:
        logger.error(f"OpenRouter doctor search error: {e}")
        return JSONResponse(status_code=500, content={"error": DOCTOR_SEARCH_FAILURE})
    return {"doctors": doctors}

# ==================== CHAT HISTORY ====================

async def save_message(**fields) -> dict:
    doc = ChatMessage(**fields).model_dump()
    await db.messages.insert_one(doc)
    doc.pop("_id", None)
    return doc

@api_router.get("/messages", response_model=List[dict])
async def get_messages(current_user: CurrentUser = Depends(get_current_user)):
    # Newest first so the cap drops the oldest messages, then back to chronological order.
    messages = await db.messages.find(
        {"uid": current_user.uid},
        {"_id": 0}
    ).sort("timestamp", -1).to_list(MESSAGE_HISTORY_LIMIT)
    messages.reverse()
    return messages

@api_router.post("/messages", response_model=dict)
async def create_message(
    message: MessageCreate,
    current_user: CurrentUser = Depends(get_current_user)
):
    text = (message.text or "").strip()
    image = (message.image or "").strip() or None
    if not text and not image:
        raise HTTPException(status_code=400, detail="Message needs text or an image")
    return await save_message(uid=current_user.uid, type="user", text=text, image=image)

@api_router.post("/chat")
async def chat_with_assistant(
    message: MessageCreate,
    current_user: CurrentUser = Depends(get_current_user)
):
    """Store the user message, ask the AI, store and return the reply"""
    text = (message.text or "").strip()
    image = (message.image or "").strip() or None
    if not text and not image:
        raise HTTPException(status_code=400, detail="Message needs text or an image")

    user_message = await save_message(uid=current_user.uid, type="user", text=text, image=image)
    reply = await generate_assistant_reply(text, image)
    ai_message = await save_message(
        uid=current_user.uid,
        type="ai",
        text=reply,
        related_user_message_id=user_message["id"]
    )
    return {"user_message": user_message, "ai_message": ai_message}

@api_router.delete("/messages/{message_id}")
async def delete_message(
    message_id: str,
    current_user: CurrentUser = Depends(get_current_user)
):
    existing = await db.messages.find_one({"id": message_id, "uid": current_user.uid}, {"_id": 0})
    if not existing:
        raise HTTPException(status_code=404, detail="Message not found")
    if existing.get("type") != "user":
        raise HTTPException(status_code=403, detail="Only your own messages can be deleted")
    await db.messages.delete_one({"id": message_id, "uid": current_user.uid})
    return {"message": "Message deleted"}

@api_router.delete("/messages")
async def clear_messages(current_user: CurrentUser = Depends(get_current_user)):
    result = await db.messages.delete_many({"uid": current_user.uid})
    return {"message": "Chat history cleared", "deleted": result.deleted_count}

# ==================== MEDICATIONS ====================

@api_router.get("/medications", response_model=List[dict])
async def get_medications(current_user: CurrentUser = Depends(get_current_user)):
    meds = await db.medications.find({"uid": current_user.uid}, {"_id": 0}).sort("time", 1).to_list(300)
    return meds

@api_router.post("/medications", response_model=dict)
async def create_medication(
    medication: MedicationCreate,
    current_user: CurrentUser = Depends(get_current_user)
):
    name = (medication.name or "").strip()
    time_value = normalize_hhmm(medication.time or "")
    if not name or not time_value:
        raise HTTPException(status_code=400, detail="Medication name and time are required")
    doc = Medication(uid=current_user.uid, name=name, time=time_value).model_dump()
    await db.medications.insert_one(doc)
    if "_id" in doc:
        del doc["_id"]
    return doc

@api_router.put("/medications/{medication_id}", response_model=dict)
async def update_medication(
    medication_id: str,
    medication: MedicationUpdate,
    current_user: CurrentUser = Depends(get_current_user)
):
    update_data = {k: v for k, v in medication.model_dump().items() if v is not None}
    if "name" in update_data:
        update_data["name"] = update_data["name"].strip()
        if not update_data["name"]:
            raise HTTPException(status_code=400, detail="Medication name cannot be blank")
    if "time" in update_data:
        update_data["time"] = normalize_hhmm(update_data["time"])
        if not update_data["time"]:
            raise HTTPException(status_code=400, detail="Medication time cannot be blank")
    update_data["updated_at"] = datetime.now(timezone.utc)
    result = await db.medications.update_one(
        {"id": medication_id, "uid": current_user.uid},
        {"$set": update_data}
    )
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Medication not found")
    updated = await db.medications.find_one({"id": medication_id, "uid": current_user.uid}, {"_id": 0})
    return updated

@api_router.post("/medications/{medication_id}/toggle", response_model=dict)
async def toggle_medication(
    medication_id: str,
    current_user: CurrentUser = Depends(get_current_user)
):
    medication = await db.medications.find_one({"id": medication_id, "uid": current_user.uid}, {"_id": 0})
    if not medication:
        raise HTTPException(status_code=404, detail="Medication not found")
    await db.medications.update_one(
        {"id": medication_id, "uid": current_user.uid},
        {"$set": {"taken": not medication.get("taken", False), "updated_at": datetime.now(timezone.utc)}}
    )
    return await db.medications.find_one({"id": medication_id, "uid": current_user.uid}, {"_id": 0})

@api_router.delete("/medications/{medication_id}")
async def delete_medication(
    medication_id: str,
    current_user: CurrentUser = Depends(get_current_user)
):
    result = await db.medications.delete_one({"id": medication_id, "uid": current_user.uid})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Medication not found")
    return {"message": "Medication deleted"}

# ==================== SERVICE ROUTES ====================

@api_router.get("/")
async def root():
    return {"message": "MediMind AI API"}

@api_router.get("/health")
async def health():
    return {"status": "ok"}

# Include the router in the main app
app.include_router(api_router)

class RequestBodyTooLarge(HTTPException):
    def __init__(self):
        super().__init__(status_code=413, detail=BODY_TOO_LARGE)

@app.exception_handler(RequestBodyTooLarge)
async def request_body_too_large_handler(request: Request, exc: RequestBodyTooLarge):
    return JSONResponse(status_code=413, content={"result": BODY_TOO_LARGE})

class BodySizeLimitMiddleware:
    """
    Reject request bodies over MAX_BODY_BYTES.
    Declared Content-Length is checked up front; chunked bodies are counted as they are read.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        limit = MAX_BODY_BYTES
        content_length = dict(scope.get("headers") or []).get(b"content-length", b"").decode("latin-1")
        if content_length.isdigit() and int(content_length) > limit:
            response = JSONResponse(status_code=413, content={"result": BODY_TOO_LARGE})
            await response(scope, receive, send)
            return

        received = 0

        async def limited_receive():
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > limit:
                    raise RequestBodyTooLarge()
            return message

        await self.app(scope, limited_receive, send)

app.add_middleware(BodySizeLimitMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=CORS_ORIGINS.split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()

def main():
    logger.info(f"Backend server running on http://localhost:{PORT}")
    uvicorn.run(app, host=HOST, port=PORT)

if __name__ == "__main__":
    main()
