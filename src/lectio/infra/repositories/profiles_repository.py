"""Profiles repository - read-only contact lookup for notifications."""

from typing import Any

from psycopg2.extensions import cursor as PgCursor


def get_profile_contact(cur: PgCursor, user_id: str) -> dict[str, Any] | None:
    """Get email and display name for a user.

    Returns:
        Dict with email and full_name or None if the profile is missing.
    """
    cur.execute(
        "SELECT email, full_name FROM profiles WHERE id = %s",
        (user_id,),
    )
    row = cur.fetchone()
    if row is None:
        return None
    return {"email": row[0], "full_name": row[1]}
