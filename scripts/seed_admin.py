#!/usr/bin/env python3
"""
Admin Seed Script
Creates (or promotes) an admin profile. Admins cannot sign up through the API.

Usage:
    python -m scripts.seed_admin <email> <password> [full name]

Example:
    python -m scripts.seed_admin admin@talktomylawyer.com securepassword123 "Site Admin"
"""
import sys
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from lawletters.auth import hash_password
from lawletters.database import SessionLocal, init_db
from lawletters.models.db_models import (
    ProfileDB, EmployeeCouponDB, Role, SubscriptionStatus,
)


def create_admin(db: Session, email: str, password: str, full_name: Optional[str] = None) -> ProfileDB:
    """Create an admin profile, or promote the existing one with this email."""
    email = email.lower()
    existing = db.query(ProfileDB).filter(ProfileDB.email == email).first()

    if existing:
        if Role(existing.role) == Role.ADMIN:
            print(f"'{email}' is already an admin.")
            return existing
        # Promoted employees stop referring
        db.query(EmployeeCouponDB).filter(EmployeeCouponDB.employee_id == existing.id).update(
            {EmployeeCouponDB.is_active: False}, synchronize_session=False
        )
        existing.role = Role.ADMIN
        existing.referral_code = None
        existing.updated_at = datetime.utcnow()
        db.commit()
        print(f"Upgraded existing profile '{email}' to admin role.")
        return existing

    admin = ProfileDB(
        id=str(uuid4()),
        email=email,
        password_hash=hash_password(password),
        full_name=full_name,
        role=Role.ADMIN,
        points=0,
        subscription_status=SubscriptionStatus.INACTIVE,
    )
    db.add(admin)
    db.commit()

    print("Admin profile created successfully!")
    print(f"  Email: {email}")
    print("  Role: admin")
    return admin


def main():
    if len(sys.argv) not in (3, 4):
        print(__doc__)
        sys.exit(1)

    email = sys.argv[1]
    password = sys.argv[2]
    full_name = sys.argv[3] if len(sys.argv) == 4 else None

    if len(password) < 8:
        print("Error: Password must be at least 8 characters.")
        sys.exit(1)

    if "@" not in email:
        print("Error: Invalid email format.")
        sys.exit(1)

    init_db()
    db = SessionLocal()
    try:
        create_admin(db, email, password, full_name)
    except Exception as e:
        db.rollback()
        print(f"Error creating admin: {e}")
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    main()
