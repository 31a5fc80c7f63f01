from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            # tz_aware so stored timestamps compare cleanly with datetime.now(timezone.utc)
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes, including the unique constraints the lead engine relies on."""
        try:
            # Companies - name unique among non-deleted, human code unique
            await self.db.companies.create_index("company_id", unique=True)
            await self.db.companies.create_index("company_code", unique=True)
            await self.db.companies.create_index(
                "company_name",
                unique=True,
                partialFilterExpression={"deleted": False},
            )
            await self.db.companies.create_index("created_at")

            # Principals - email/phone unique per collection; cross-collection checks live in the service
            for collection in (self.db.users, self.db.associate_users):
                await collection.create_index("user_id", unique=True)
                await collection.create_index("email", unique=True)
                await collection.create_index("phone_number", unique=True)
                await collection.create_index([("company_id", 1), ("role", 1), ("status", 1)])
            await self.db.associate_users.create_index("createdBy.id")
            await self.db.admins.create_index("admin_id", unique=True)
            await self.db.admins.create_index("email", unique=True)
            # Only one admin account may ever exist
            await self.db.admins.create_index("singleton", unique=True)

            # Projects
            await self.db.projects.create_index("project_id", unique=True)
            await self.db.projects.create_index("project_code", unique=True)

            # Master statuses
            await self.db.master_statuses.create_index("status_id", unique=True)
            await self.db.master_statuses.create_index(
                "name",
                unique=True,
                partialFilterExpression={"deleted": False},
            )

            # Customers (leads) - phone and email are globally unique
            await self.db.customers.create_index("customer_id", unique=True)
            await self.db.customers.create_index("phone_number", unique=True)
            await self.db.customers.create_index("email", unique=True)
            await self.db.customers.create_index([("createdBy.id", 1), ("created_at", -1)])
            await self.db.customers.create_index([("company_id", 1), ("created_at", -1)])
            await self.db.customers.create_index("acceptedBy")
            await self.db.customers.create_index("broadcasted_to")

            # Follow-ups / notes - one document per customer
            await self.db.follow_ups.create_index("customer_id", unique=True)
            await self.db.notes.create_index("customer_id", unique=True)

            # One-time registration links
            await self.db.customer_links.create_index("code", unique=True)
            await self.db.customer_links.create_index("expires_at")
            await self.db.associate_links.create_index("code", unique=True)
            await self.db.associate_links.create_index("expires_at")

            # Audit log indexes - for timeline queries
            await self.db.audit_logs.create_index([("resource_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()
