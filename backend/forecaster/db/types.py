from __future__ import annotations

from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import JSON


# Native JSONB on Postgres, plain JSON (TEXT) elsewhere.
JSON_PAYLOAD = JSON().with_variant(JSONB(), "postgresql")
