"""
Storefront: settings provider

A single settings document (row id 1), created with defaults the first time
anyone asks for it. Callers fetch it once per request and pass it down.
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Settings, utcnow

SETTINGS_ID = 1


async def get_settings(session: AsyncSession) -> Settings:
    result = await session.execute(
        text("SELECT document FROM settings WHERE id = :id"),
        {"id": SETTINGS_ID},
    )
    row = result.fetchone()
    if row:
        return Settings.model_validate_json(row.document)

    defaults = Settings()
    # Two first requests may race here; the loser's insert is a no-op.
    await session.execute(
        text("""
            INSERT INTO settings (id, document, updated_at)
            VALUES (:id, :document, :now)
            ON CONFLICT (id) DO NOTHING
        """),
        {"id": SETTINGS_ID, "document": defaults.model_dump_json(), "now": utcnow().isoformat()},
    )
    await session.commit()

    result = await session.execute(
        text("SELECT document FROM settings WHERE id = :id"),
        {"id": SETTINGS_ID},
    )
    return Settings.model_validate_json(result.fetchone().document)


async def save_settings(session: AsyncSession, settings: Settings) -> None:
    """Replace the settings document. Does not commit."""
    await session.execute(
        text("""
            INSERT INTO settings (id, document, updated_at)
            VALUES (:id, :document, :now)
            ON CONFLICT (id) DO UPDATE SET
                document = excluded.document,
                updated_at = excluded.updated_at
        """),
        {"id": SETTINGS_ID, "document": settings.model_dump_json(), "now": utcnow().isoformat()},
    )
