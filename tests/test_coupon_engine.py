"""
Tests for the referral CouponEngine.

1. Code validation never raises and explains why a code is unusable
2. Redemption math (discount, final price, commission) to the cent
3. One redemption = one usage, one commission row, +1 point
4. Idempotency per processor subscription id
5. All-or-nothing: a failure mid-redemption leaves nothing behind
6. Parallel redemptions on separate sessions count exactly once each
"""
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import patch
from uuid import uuid4
import threading

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from lawletters.database import Base
from lawletters.errors import InvariantViolationError, ValidationError
from lawletters.models.db_models import (
    CommissionPaymentDB, EmployeeCouponDB, ProfileDB, SubscriptionDB, SubscriptionStatus, PlanType, Role,
)
from lawletters.services.referrals import CouponEngine, CodeValidation, compute_amounts, round2


def _coupon(db, employee):
    return db.query(EmployeeCouponDB).filter(EmployeeCouponDB.employee_id == employee.id).one()


# =============================================================================
# TEST: COUPON CREATION
# =============================================================================

class TestCreateCoupon:

    def test_code_format(self, db, employee):
        coupon = _coupon(db, employee)

        assert coupon.code.startswith("EMP-")
        suffix = coupon.code[len("EMP-"):]
        assert len(suffix) == 5
        assert suffix.isalnum() and suffix == suffix.upper()
        assert coupon.discount_percentage == 20
        assert coupon.usage_count == 0
        assert employee.referral_code == coupon.code

    def test_idempotent_per_employee(self, db, employee):
        first = _coupon(db, employee)
        again = CouponEngine(db).create_employee_coupon(employee.id)

        assert again.id == first.id
        assert db.query(EmployeeCouponDB).count() == 1

    def test_users_cannot_hold_coupons(self, db, user):
        with pytest.raises(ValidationError):
            CouponEngine(db).create_employee_coupon(user.id)

    def test_generated_codes_are_unique(self, db, make_profile):
        engine = CouponEngine(db)
        codes = {
            engine.create_employee_coupon(make_profile(Role.EMPLOYEE).id).code
            for _ in range(20)
        }
        assert len(codes) == 20


# =============================================================================
# TEST: VALIDATION
# =============================================================================

class TestValidateCode:

    def test_valid_code(self, db, employee):
        coupon = _coupon(db, employee)
        result = CouponEngine(db).validate_code(coupon.code.lower())

        assert result.valid is True
        assert result.discount_percentage == 20
        assert result.employee_id == employee.id
        assert result.reason is None

    @pytest.mark.parametrize("code", [None, "", "   ", "EMP-NOPE1", "garbage"])
    def test_missing_or_unknown_never_raises(self, db, code):
        result = CouponEngine(db).validate_code(code)
        assert result.valid is False
        assert result.reason in ("missing", "not_found")

    def test_inactive(self, db, employee):
        coupon = _coupon(db, employee)
        CouponEngine(db).deactivate(coupon.code)

        assert CouponEngine(db).validate_code(coupon.code).reason == "inactive"

    def test_expired(self, db, employee):
        coupon = _coupon(db, employee)
        coupon.expires_at = datetime.utcnow() - timedelta(days=1)
        db.commit()

        result = CouponEngine(db).validate_code(coupon.code)
        assert result.valid is False
        assert result.reason == "expired"

    def test_usage_cap_reached(self, db, employee):
        coupon = _coupon(db, employee)
        coupon.max_uses = 2
        coupon.usage_count = 2
        db.commit()

        assert CouponEngine(db).validate_code(coupon.code).reason == "usage_limit_reached"

    def test_owner_no_longer_employee(self, db, employee):
        coupon = _coupon(db, employee)
        employee.role = Role.USER
        db.commit()

        assert CouponEngine(db).validate_code(coupon.code).reason == "not_an_employee"


# =============================================================================
# TEST: AMOUNTS
# =============================================================================

class TestAmounts:

    def test_reference_example(self):
        amounts = compute_amounts(Decimal("49.99"), 20)

        assert amounts["final_amount"] == Decimal("39.99")
        assert amounts["discount_amount"] == Decimal("10.00")
        assert amounts["commission_amount"] == Decimal("2.50")

    @pytest.mark.parametrize("amount", ["19.99", "49.99", "199.99", "0.01", "10"])
    @pytest.mark.parametrize("pct", [1, 5, 10, 15, 20, 33, 50, 99, 100])
    def test_final_plus_discount_is_original(self, amount, pct):
        amount = Decimal(amount)
        amounts = compute_amounts(amount, pct)

        assert amounts["final_amount"] == round2(amount - amount * pct / Decimal(100))
        assert amounts["final_amount"] + amounts["discount_amount"] == amounts["original_amount"]
        assert amounts["final_amount"] >= 0


# =============================================================================
# TEST: REDEMPTION
# =============================================================================

class TestApplyCode:

    def test_valid_code_credits_employee(self, db, user, employee):
        """EMP-AB12345 at 20% on $49.99 → $39.99, commission at the configured rate, +1 point."""
        coupon = _coupon(db, employee)
        coupon.code = "EMP-AB12345"
        employee.referral_code = "EMP-AB12345"
        db.commit()

        result = CouponEngine(db).apply_code(
            "EMP-AB12345", user.id, PlanType.FOUR_MONTHLY, Decimal("49.99"), subscription_ref="sub_abc",
        )

        assert result.applied
        assert result.warning is None
        sub = result.subscription
        assert sub.amount == Decimal("39.99")
        assert sub.original_amount == Decimal("49.99")
        assert sub.discount_amount == Decimal("10.00")
        assert sub.coupon_code == "EMP-AB12345"
        assert sub.employee_id == employee.id
        assert sub.letters_allowed == 4

        payments = db.query(CommissionPaymentDB).all()
        assert len(payments) == 1
        assert payments[0].commission_amount == Decimal("2.50")
        assert payments[0].points_awarded == 1
        assert payments[0].subscription_id == sub.id
        assert payments[0].referred_user_id == user.id

        db.refresh(employee)
        db.refresh(coupon)
        assert employee.points == 1
        assert employee.commission_earned == Decimal("2.50")
        assert coupon.usage_count == 1

    def test_no_code_is_full_price(self, db, user, employee):
        result = CouponEngine(db).apply_code(None, user.id, PlanType.ONE_LETTER, Decimal("19.99"))

        assert result.subscription.amount == Decimal("19.99")
        assert result.subscription.discount_amount == Decimal("0.00")
        assert result.commission is None
        assert result.warning is None
        db.refresh(employee)
        assert employee.points == 0

    @pytest.mark.parametrize("code", ["EMP-ZZZZZ", "inactive"])
    def test_invalid_code_is_full_price_with_warning(self, db, user, employee, code):
        coupon = _coupon(db, employee)
        if code == "inactive":
            CouponEngine(db).deactivate(coupon.code)
            code = coupon.code

        result = CouponEngine(db).apply_code(code, user.id, PlanType.FOUR_MONTHLY, Decimal("49.99"))

        assert result.subscription.amount == Decimal("49.99")
        assert result.subscription.coupon_code is None
        assert result.commission is None
        assert "full price" in result.warning
        assert db.query(CommissionPaymentDB).count() == 0
        db.refresh(employee)
        db.refresh(coupon)
        assert employee.points == 0
        assert coupon.usage_count == 0

    def test_unknown_plan_rejected(self, db, user):
        with pytest.raises(ValidationError):
            CouponEngine(db).apply_code(None, user.id, "platinum", Decimal("9.99"))
        assert db.query(SubscriptionDB).count() == 0

    def test_n_redemptions_count_n(self, db, make_profile, employee):
        coupon = _coupon(db, employee)
        engine = CouponEngine(db)
        n = 10

        for i in range(n):
            buyer = make_profile(Role.USER)
            engine.apply_code(coupon.code, buyer.id, PlanType.FOUR_MONTHLY, Decimal("49.99"), subscription_ref=f"sub_{i}")

        db.refresh(coupon)
        db.refresh(employee)
        assert coupon.usage_count == n
        assert employee.points == n
        assert employee.commission_earned == Decimal("2.50") * n
        assert db.query(CommissionPaymentDB).count() == n

    def test_usage_cap_enforced(self, db, make_profile, employee):
        coupon = _coupon(db, employee)
        coupon.max_uses = 3
        db.commit()
        engine = CouponEngine(db)

        results = [
            engine.apply_code(coupon.code, make_profile(Role.USER).id, PlanType.ONE_LETTER, Decimal("19.99"))
            for _ in range(5)
        ]

        assert [r.applied for r in results] == [True, True, True, False, False]
        db.refresh(coupon)
        assert coupon.usage_count == 3

    def test_stale_validation_does_not_overspend(self, db, user, employee):
        """A code that passed validation but hit its cap meanwhile is not redeemed."""
        coupon = _coupon(db, employee)
        coupon.max_uses = 1
        coupon.usage_count = 1
        db.commit()

        engine = CouponEngine(db)
        stale = CodeValidation(valid=True, code=coupon.code, discount_percentage=20, employee_id=employee.id)
        with patch.object(engine, "validate_code", return_value=stale):
            result = engine.apply_code(coupon.code, user.id, PlanType.ONE_LETTER, Decimal("19.99"))

        assert not result.applied
        assert result.subscription.amount == Decimal("19.99")
        db.refresh(coupon)
        assert coupon.usage_count == 1


# =============================================================================
# TEST: IDEMPOTENCY & ATOMICITY
# =============================================================================

class TestIdempotency:

    def test_same_subscription_twice_credits_once(self, db, user, employee):
        coupon = _coupon(db, employee)
        engine = CouponEngine(db)

        first = engine.apply_code(coupon.code, user.id, PlanType.FOUR_MONTHLY, Decimal("49.99"), subscription_ref="sub_dup")
        second = engine.apply_code(coupon.code, user.id, PlanType.FOUR_MONTHLY, Decimal("49.99"), subscription_ref="sub_dup")

        assert second.replayed
        assert second.subscription.id == first.subscription.id
        assert second.commission.id == first.commission.id
        assert db.query(SubscriptionDB).count() == 1
        assert db.query(CommissionPaymentDB).count() == 1
        db.refresh(employee)
        db.refresh(coupon)
        assert employee.points == 1
        assert employee.commission_earned == Decimal("2.50")
        assert coupon.usage_count == 1

    def test_mismatched_counter_detected_on_replay(self, db, user, employee):
        coupon = _coupon(db, employee)
        engine = CouponEngine(db)
        engine.apply_code(coupon.code, user.id, PlanType.ONE_LETTER, Decimal("19.99"), subscription_ref="sub_x")

        coupon.usage_count = 5
        db.commit()

        with pytest.raises(InvariantViolationError):
            engine.apply_code(coupon.code, user.id, PlanType.ONE_LETTER, Decimal("19.99"), subscription_ref="sub_x")

    def test_missing_commission_detected_on_replay(self, db, user, employee):
        coupon = _coupon(db, employee)
        engine = CouponEngine(db)
        result = engine.apply_code(coupon.code, user.id, PlanType.ONE_LETTER, Decimal("19.99"), subscription_ref="sub_y")

        db.delete(result.commission)
        db.commit()

        with pytest.raises(InvariantViolationError):
            engine.apply_code(coupon.code, user.id, PlanType.ONE_LETTER, Decimal("19.99"), subscription_ref="sub_y")

    def test_failure_mid_redemption_rolls_back_everything(self, db, user, employee):
        coupon = _coupon(db, employee)
        engine = CouponEngine(db)

        with patch.object(engine, "_credit_employee", side_effect=RuntimeError("connection lost")):
            with pytest.raises(RuntimeError):
                engine.apply_code(coupon.code, user.id, PlanType.FOUR_MONTHLY, Decimal("49.99"), subscription_ref="sub_fail")

        assert db.query(SubscriptionDB).count() == 0
        assert db.query(CommissionPaymentDB).count() == 0
        db.refresh(coupon)
        db.refresh(employee)
        assert coupon.usage_count == 0
        assert employee.points == 0

        # The processor retries and the redemption goes through once
        result = engine.apply_code(coupon.code, user.id, PlanType.FOUR_MONTHLY, Decimal("49.99"), subscription_ref="sub_fail")
        assert result.applied
        db.refresh(coupon)
        assert coupon.usage_count == 1

    def test_failure_is_logged_with_context(self, db, user, employee, caplog):
        coupon = _coupon(db, employee)
        engine = CouponEngine(db)

        with patch.object(engine, "_credit_employee", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                engine.apply_code(coupon.code, user.id, PlanType.FOUR_MONTHLY, Decimal("49.99"), subscription_ref="sub_log")

        message = " ".join(r.getMessage() for r in caplog.records)
        assert "sub_log" in message
        assert user.id in message
        assert "49.99" in message


# =============================================================================
# TEST: CONCURRENT REDEMPTION
# =============================================================================

@pytest.fixture
def file_sessions(tmp_path):
    """Sessions on a shared SQLite file, one connection per thread, writes serialized."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'redemptions.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


def _seed_profile(session, role):
    profile = ProfileDB(
        id=str(uuid4()),
        email=f"{role.value}-{uuid4().hex[:8]}@example.com",
        password_hash="not-a-real-hash",
        role=role,
        points=0,
        commission_earned=Decimal("0.00"),
        subscription_status=SubscriptionStatus.INACTIVE,
    )
    session.add(profile)
    session.commit()
    return profile.id


class TestConcurrentRedemption:

    def _seed(self, sessions, buyers, max_uses=None):
        session = sessions()
        try:
            employee_id = _seed_profile(session, Role.EMPLOYEE)
            coupon = CouponEngine(session).create_employee_coupon(employee_id)
            if max_uses is not None:
                coupon.max_uses = max_uses
                session.commit()
            code = coupon.code
            buyer_ids = [_seed_profile(session, Role.USER) for _ in range(buyers)]
        finally:
            session.close()
        return employee_id, code, buyer_ids

    def _redeem_all(self, sessions, code, buyer_ids):
        barrier = threading.Barrier(len(buyer_ids))

        def redeem(index, buyer_id):
            session = sessions()
            try:
                barrier.wait()
                result = CouponEngine(session).apply_code(
                    code, buyer_id, PlanType.FOUR_MONTHLY, Decimal("49.99"), subscription_ref=f"sub_{index}",
                )
                return result.applied
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=len(buyer_ids)) as pool:
            futures = [pool.submit(redeem, i, buyer_id) for i, buyer_id in enumerate(buyer_ids)]
            return [f.result() for f in futures]

    def test_n_parallel_redemptions_count_n(self, file_sessions):
        n = 8
        employee_id, code, buyer_ids = self._seed(file_sessions, n)

        applied = self._redeem_all(file_sessions, code, buyer_ids)

        assert applied == [True] * n
        session = file_sessions()
        try:
            coupon = session.query(EmployeeCouponDB).filter(EmployeeCouponDB.code == code).one()
            employee = session.query(ProfileDB).filter(ProfileDB.id == employee_id).one()
            assert coupon.usage_count == n
            assert session.query(CommissionPaymentDB).count() == n
            assert session.query(SubscriptionDB).count() == n
            assert employee.points == n
            assert employee.commission_earned == Decimal("2.50") * n
        finally:
            session.close()

    def test_usage_cap_holds_under_contention(self, file_sessions):
        employee_id, code, buyer_ids = self._seed(file_sessions, 8, max_uses=3)

        applied = self._redeem_all(file_sessions, code, buyer_ids)

        assert applied.count(True) == 3
        session = file_sessions()
        try:
            coupon = session.query(EmployeeCouponDB).filter(EmployeeCouponDB.code == code).one()
            employee = session.query(ProfileDB).filter(ProfileDB.id == employee_id).one()
            assert coupon.usage_count == 3
            assert session.query(CommissionPaymentDB).count() == 3
            # Over-cap buyers still get a full-price subscription
            assert session.query(SubscriptionDB).count() == 8
            assert employee.points == 3
        finally:
            session.close()


# =============================================================================
# TEST: STATS
# =============================================================================

class TestEmployeeStats:

    def test_stats(self, db, user, employee):
        coupon = _coupon(db, employee)
        engine = CouponEngine(db)
        engine.apply_code(coupon.code, user.id, PlanType.EIGHT_YEARLY, Decimal("199.99"), subscription_ref="sub_s")

        stats = engine.employee_stats(employee.id)

        assert stats["coupon"]["code"] == coupon.code
        assert stats["coupon"]["usage_count"] == 1
        assert stats["points"] == 1
        # 199.99 * 0.05 = 9.9995
        assert stats["commission_earned"] == "10.00"
        assert len(stats["recent_commissions"]) == 1
        assert stats["recent_commissions"][0]["commission_amount"] == "10.00"
