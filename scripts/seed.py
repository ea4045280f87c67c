"""
Seed script: one organization with an admin, a manager, a viewer and a
default tax rate, then prints a development bearer token for each user.
Run from the project root: python -m scripts.seed
"""
import asyncio
import sys
import os
import uuid
from decimal import Decimal

# Ensure the project root is on sys.path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select
from poflow.database import AsyncSessionLocal, engine
from poflow.models.organization import Organization
from poflow.models.tax_rate import TaxRate
from poflow.models.user import User
from poflow.services.auth_service import create_access_token

# ---------- Fixed UUIDs ----------

ORG_ACME_ID = uuid.UUID("a0000000-0000-0000-0000-000000000001")

USER_ADMIN_ID = uuid.UUID("a0000000-0000-0000-0000-000000000101")
USER_MANAGER_ID = uuid.UUID("a0000000-0000-0000-0000-000000000102")
USER_VIEWER_ID = uuid.UUID("a0000000-0000-0000-0000-000000000103")

TAX_VAT_ID = uuid.UUID("c0000000-0000-0000-0000-000000000001")


async def seed():
    async with AsyncSessionLocal() as db:
        result = await db.execute(select(Organization).where(Organization.id == ORG_ACME_ID))
        if result.scalar_one_or_none():
            print("Seed data already exists. Skipping.")
        else:
            db.add(Organization(
                id=ORG_ACME_ID,
                name="Acme Trading Ltd",
                slug="acme-trading",
                approval_threshold=Decimal("50.00"),
                auto_approve_admin=True,
                default_currency="GBP",
            ))
            await db.flush()

            db.add_all([
                User(id=USER_ADMIN_ID, organization_id=ORG_ACME_ID, email="admin@acme.test",
                     name="Ada Admin", role="ADMIN"),
                User(id=USER_MANAGER_ID, organization_id=ORG_ACME_ID, email="manager@acme.test",
                     name="Max Manager", role="MANAGER"),
                User(id=USER_VIEWER_ID, organization_id=ORG_ACME_ID, email="viewer@acme.test",
                     name="Vic Viewer", role="VIEWER"),
            ])
            db.add(TaxRate(id=TAX_VAT_ID, organization_id=ORG_ACME_ID, name="VAT 20%",
                           rate=Decimal("20.00"), is_default=True, is_active=True))
            await db.commit()
            print("Seed data inserted successfully!")
            print("  Organizations: 1")
            print("  Users: 3")
            print("  Tax rates: 1")

    print("\nDevelopment tokens:")
    for user_id, email in [
        (USER_ADMIN_ID, "admin@acme.test"),
        (USER_MANAGER_ID, "manager@acme.test"),
        (USER_VIEWER_ID, "viewer@acme.test"),
    ]:
        print(f"  {email}: {create_access_token(str(user_id), email, expires_minutes=24 * 60)}")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed())
