import os
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from ambulink.core.logger import get_logger

load_dotenv()

logger = get_logger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")


def build_engine(url: Optional[str]) -> Optional[Engine]:
    """Without DATABASE_URL the service runs from the seed CSVs, so no engine is built."""
    if not url:
        return None
    host = url.split("@", 1)[1] if "@" in url else url
    logger.info("database: %s", host.split("?")[0])
    return create_engine(url, pool_pre_ping=True)


engine = build_engine(DATABASE_URL)
