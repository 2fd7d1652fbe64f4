"""
Migration: Add processed_webhook_events and the unique subscription keys.

Webhook redelivery becomes a no-op once each event id is recorded, and a
subscription can carry at most one commission payment.
"""
from sqlalchemy import create_engine, text

from lawletters.config import DATABASE_URL


def _index_exists(conn, name: str) -> bool:
    result = conn.execute(text("SELECT 1 FROM pg_indexes WHERE indexname = :name"), {"name": name})
    return result.fetchone() is not None


def run_migration():
    engine = create_engine(DATABASE_URL)

    with engine.connect() as conn:
        conn.execute(text("""
            CREATE TABLE IF NOT EXISTS processed_webhook_events (
                event_id VARCHAR(255) PRIMARY KEY,
                event_type VARCHAR(100) NOT NULL,
                received_at TIMESTAMP DEFAULT NOW()
            )
        """))
        print("processed_webhook_events table ready")

        if _index_exists(conn, "uq_commission_payments_subscription_id"):
            print("commission_payments.subscription_id is already unique")
        else:
            conn.execute(text("""
                CREATE UNIQUE INDEX uq_commission_payments_subscription_id
                ON commission_payments (subscription_id)
            """))
            print("Made commission_payments.subscription_id unique")

        if _index_exists(conn, "uq_subscriptions_external_subscription_id"):
            print("subscriptions.external_subscription_id is already unique")
        else:
            conn.execute(text("""
                CREATE UNIQUE INDEX uq_subscriptions_external_subscription_id
                ON subscriptions (external_subscription_id)
            """))
            print("Made subscriptions.external_subscription_id unique")

        conn.commit()

if __name__ == "__main__":
    run_migration()
