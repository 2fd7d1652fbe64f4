"""
Migration: Add letter quota columns to subscriptions.

letters_allowed is backfilled from the plan type; existing subscriptions
start with nothing used.
"""
from sqlalchemy import create_engine, text

from lawletters.config import DATABASE_URL

PLAN_LETTERS = {
    "one_letter": 1,
    "four_monthly": 4,
    "eight_yearly": 8,
}


def run_migration():
    """Add letters_allowed / letters_used and backfill them."""
    engine = create_engine(DATABASE_URL)

    with engine.connect() as conn:
        result = conn.execute(text("""
            SELECT column_name
            FROM information_schema.columns
            WHERE table_name = 'subscriptions' AND column_name = 'letters_allowed'
        """))

        if result.fetchone():
            print("letters_allowed column already exists")
        else:
            conn.execute(text("""
                ALTER TABLE subscriptions
                ADD COLUMN letters_allowed INTEGER NOT NULL DEFAULT 1,
                ADD COLUMN letters_used INTEGER NOT NULL DEFAULT 0
            """))
            print("Added letters_allowed and letters_used to subscriptions")

            for plan_type, letters in PLAN_LETTERS.items():
                conn.execute(
                    text("UPDATE subscriptions SET letters_allowed = :letters WHERE plan_type = :plan"),
                    {"letters": letters, "plan": plan_type},
                )
            print("Backfilled letters_allowed from plan_type")

        conn.commit()

if __name__ == "__main__":
    run_migration()
