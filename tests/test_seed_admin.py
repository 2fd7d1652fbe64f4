"""
Tests for the admin seed script.
"""
from lawletters.auth import verify_password
from lawletters.models.db_models import EmployeeCouponDB, ProfileDB, Role
from scripts.seed_admin import create_admin


class TestCreateAdmin:

    def test_creates_admin(self, db):
        admin = create_admin(db, "Boss@Example.com", "securepassword123", "Site Admin")

        stored = db.query(ProfileDB).filter(ProfileDB.id == admin.id).one()
        assert stored.email == "boss@example.com"
        assert Role(stored.role) == Role.ADMIN
        assert verify_password("securepassword123", stored.password_hash)

    def test_existing_admin_unchanged(self, db, admin):
        again = create_admin(db, admin.email, "whatever123")

        assert again.id == admin.id
        assert db.query(ProfileDB).filter(ProfileDB.role == Role.ADMIN).count() == 1

    def test_promotes_employee_and_retires_code(self, db, employee):
        promoted = create_admin(db, employee.email, "whatever123")

        assert promoted.id == employee.id
        assert Role(promoted.role) == Role.ADMIN
        coupon = db.query(EmployeeCouponDB).filter(EmployeeCouponDB.employee_id == employee.id).one()
        assert coupon.is_active is False
