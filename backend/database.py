"""
Settings and MongoDB connection.

Settings are read from the process environment, seeded from backend/.env
when present. A Database is built once per application and handed to the
services; nothing here is a module-level client.
"""

from dataclasses import dataclass, field
from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pathlib import Path
from typing import List, Mapping, Optional
import os
import logging

from ledger.errors import ConfigurationError

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).parent


@dataclass(frozen=True)
class Settings:
    mongo_url: str
    db_name: str
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


def parse_origins(value: str) -> List[str]:
    origins = [o.strip() for o in value.split(",") if o.strip()]
    return origins or ["*"]


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Read settings; missing MONGO_URL / DB_NAME is a startup error."""
    if environ is None:
        load_dotenv(ROOT_DIR / '.env')
        environ = os.environ

    missing = [key for key in ("MONGO_URL", "DB_NAME") if not environ.get(key)]
    if missing:
        raise ConfigurationError(
            f"Missing required configuration: {', '.join(missing)}",
            details={"missing": missing}
        )

    origins = parse_origins(environ.get("CORS_ORIGINS", "*"))
    return Settings(
        mongo_url=environ["MONGO_URL"],
        db_name=environ["DB_NAME"],
        log_level=environ.get("LOG_LEVEL", "INFO").upper(),
        cors_origins=origins,
    )


class Database:
    """Motor client + database handle shared by every service"""

    def __init__(self, settings: Settings, client: Optional[AsyncIOMotorClient] = None):
        self.settings = settings
        self.client = client
        self.db: Optional[AsyncIOMotorDatabase] = None
        if client is not None:
            self.db = client[settings.db_name]

    async def connect(self):
        if self.client is None:
            self.client = AsyncIOMotorClient(self.settings.mongo_url)
            self.db = self.client[self.settings.db_name]
        logger.info(f"Connected to MongoDB database '{self.settings.db_name}'")

    def close(self):
        if self.client is not None:
            self.client.close()
            logger.info("MongoDB connection closed")

    async def create_indexes(self):
        """Lookup indexes the ledger engine relies on"""
        db = self.db

        # Payments by target and by party
        await db.payments.create_index("sale_id")
        await db.payments.create_index("asset_id")
        await db.payments.create_index([("procurement_id", 1), ("procurement_type", 1)])
        await db.payments.create_index("expense_id")
        await db.payments.create_index([("party_type", 1), ("party_id", 1)])

        # Targets by owning party
        await db.sales.create_index("invoice_number", unique=True)
        await db.sales.create_index("client_id")
        await db.assets.create_index("vendor_id")
        await db.raw_material_procurements.create_index("vendor_id")
        await db.trading_goods_procurements.create_index("vendor_id")

        # Loans
        await db.loan_accounts.create_index("account_number", unique=True)
        await db.interest_payments.create_index("loan_account_id")

        # Audit logs
        await db.audit_logs.create_index([("entity_type", 1), ("entity_id", 1)])
        await db.audit_logs.create_index([("timestamp", -1)])

        logger.info("Indexes created")
