import os

DATABASE_URL = os.getenv("DATABASE_URL", "postgresql+psycopg://amilou:amilou@db:5432/amilou")
SESSION_TTL_MINUTES = int(os.getenv("SESSION_TTL_MINUTES", "480"))
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "amilou_session")
SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "1").lower() in {"1", "true", "yes"}
CSRF_HEADER_NAME = "X-CSRF-Token"
IMPERSONATION_TTL_MINUTES = int(os.getenv("IMPERSONATION_TTL_MINUTES", "120"))
PDF_TTL_SECONDS = int(os.getenv("PDF_TTL_SECONDS", "300"))
PDF_MAX_BYTES = int(os.getenv("PDF_MAX_BYTES", str(20 * 1024 * 1024)))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
