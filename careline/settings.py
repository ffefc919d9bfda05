"""
Centralized configuration for CareLine.
Env-based constants with defaults; components take these as constructor
defaults so tests can override them per instance.
"""

import os
from dotenv import load_dotenv

load_dotenv()

# --- Classification ---
CONFIDENCE_THRESHOLD = float(os.getenv("CONFIDENCE_THRESHOLD", "0.7"))
MAX_FOLLOW_UPS = int(os.getenv("MAX_FOLLOW_UPS", "5"))
CLASSIFIER_BACKEND = os.getenv("CLASSIFIER_BACKEND", "keyword")  # keyword | gemini
CLASSIFIER_MODEL = os.getenv("CLASSIFIER_MODEL", "gemini-2.0-flash")
EXTRACTOR_BACKEND = os.getenv("EXTRACTOR_BACKEND", "keyword")  # keyword | gemini
EXTRACTOR_MODEL = os.getenv("EXTRACTOR_MODEL", CLASSIFIER_MODEL)

# --- Response envelopes (seconds) ---
TIER1_RESPONSE_SECONDS = float(os.getenv("TIER1_RESPONSE_SECONDS", "3"))
TIER2_RESPONSE_SECONDS = float(os.getenv("TIER2_RESPONSE_SECONDS", "5"))
VOICE_RESPONSE_SECONDS = float(os.getenv("VOICE_RESPONSE_SECONDS", "7"))

# --- Escalation ---
ESCALATION_DEADLINE_SECONDS = float(os.getenv("ESCALATION_DEADLINE_SECONDS", "30"))
AVAILABILITY_TIMEOUT_SECONDS = float(os.getenv("AVAILABILITY_TIMEOUT_SECONDS", "2"))
EMERGENCY_CONTACT_NUMBER = os.getenv("EMERGENCY_CONTACT_NUMBER", "999")
# Used when the patient snapshot names no assigned provider
ON_CALL_PROVIDER_ID = os.getenv("ON_CALL_PROVIDER_ID", "on-call")
HANDOFF_REPLY_SECONDS = float(os.getenv("HANDOFF_REPLY_SECONDS", "15"))
APPOINTMENT_RESERVE_SECONDS = float(os.getenv("APPOINTMENT_RESERVE_SECONDS", "5"))
PROVIDER_ALERT_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_ALERT_TIMEOUT_SECONDS", "5"))

# --- Sessions ---
SESSION_INACTIVITY_SECONDS = int(os.getenv("SESSION_INACTIVITY_SECONDS", "1800"))  # 30 minutes
SESSION_CLEANUP_INTERVAL_SECONDS = int(os.getenv("SESSION_CLEANUP_INTERVAL_SECONDS", "60"))
REORDER_WINDOW_SECONDS = float(os.getenv("REORDER_WINDOW_SECONDS", "2"))
CLOSED_SESSION_CACHE_SIZE = int(os.getenv("CLOSED_SESSION_CACHE_SIZE", "500"))

# --- Collaborators ---
PATIENT_DATA_TIMEOUT_SECONDS = float(os.getenv("PATIENT_DATA_TIMEOUT_SECONDS", "2"))
# Empty → in-memory harness collaborators (development mode)
CARE_SERVICES_URL = os.getenv("CARE_SERVICES_URL", "")
CARE_SERVICES_TOKEN = os.getenv("CARE_SERVICES_TOKEN", "")

# --- Server ---
PORT = int(os.getenv("PORT", "8080"))
