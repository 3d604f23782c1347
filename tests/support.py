from __future__ import annotations

import itertools
import os
import time
import unittest

from partsmarket import create_app
from partsmarket.extensions import db
from partsmarket.integrations.payments.base import (
    GatewayStatus,
    PaymentInitializeResult,
    PaymentsProvider,
    PaymentVerifyResult,
    RefundResult,
    TransferResult,
)
from partsmarket.models import Address, Customer, Driver, Part, User, Vendor
from partsmarket.services.order_service import CreateOrderRequest, OrderLineRequest, OrderService
from partsmarket.services.order_state import OrderType
from partsmarket.services.payment_service import PaymentService
from partsmarket.utils.jwt_utils import create_token

_SEQ = itertools.count(1)


def unique_stamp() -> str:
    return f"{time.time_ns()}{next(_SEQ)}"


class AppTestCase(unittest.TestCase):
    """Fresh database per test class, in memory unless ``DATABASE_URI`` names a file."""

    CONFIG: dict = {}
    DATABASE_URI: str | None = None

    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        cls._prev_db_url = os.getenv("DATABASE_URL")
        db_uri = cls.DATABASE_URI or "sqlite:///:memory:"
        os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
        os.environ["DATABASE_URL"] = db_uri
        cls.app = create_app()
        cls.app.config.update(TESTING=True, **cls.CONFIG)
        with cls.app.app_context():
            db.create_all()
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        if cls._prev_db_uri is None:
            os.environ.pop("SQLALCHEMY_DATABASE_URI", None)
        else:
            os.environ["SQLALCHEMY_DATABASE_URI"] = cls._prev_db_uri
        if cls._prev_db_url is None:
            os.environ.pop("DATABASE_URL", None)
        else:
            os.environ["DATABASE_URL"] = cls._prev_db_url


def auth_headers(user_id: int) -> dict:
    return {"Authorization": f"Bearer {create_token(int(user_id))}"}


def make_user(role: str = "customer") -> User:
    stamp = unique_stamp()
    user = User(name=f"{role}-{stamp}", email=f"{role}-{stamp}@partsmarket.test", role=role)
    user.set_password("Passw0rd!")
    db.session.add(user)
    db.session.flush()
    return user


def make_admin() -> User:
    user = make_user("admin")
    db.session.commit()
    return user


def make_customer() -> Customer:
    user = make_user("customer")
    customer = Customer(user_id=user.id, first_name="Ada", last_name="Obi", email=user.email)
    db.session.add(customer)
    db.session.commit()
    return customer


def make_address(customer: Customer, *, lat: float | None = 6.5244, lon: float | None = 3.3792) -> Address:
    address = Address(customer_id=customer.id, street="12 Marina Rd", city="Lagos", state="Lagos", latitude=lat, longitude=lon)
    db.session.add(address)
    db.session.commit()
    return address


def make_vendor(
    *,
    commission_rate: float | None = None,
    bank: bool = True,
    earnings: float = 0.0,
    lat: float | None = 6.5244,
    lon: float | None = 3.3792,
) -> Vendor:
    user = make_user("vendor")
    vendor = Vendor(
        user_id=user.id,
        business_name=f"Spares {user.id}",
        email=user.email,
        latitude=lat,
        longitude=lon,
        commission_rate=commission_rate,
        total_earnings=earnings,
        total_paid_out=0.0,
    )
    if bank:
        vendor.bank_name = "GTBank"
        vendor.bank_account_name = "Spares Ltd"
        vendor.bank_account_number = "0123456789"
    db.session.add(vendor)
    db.session.commit()
    return vendor


def make_driver(*, bank: bool = True, earnings: float = 0.0) -> Driver:
    user = make_user("driver")
    driver = Driver(user_id=user.id, first_name="Tunde", last_name="Bello", total_earnings=earnings, total_paid_out=0.0)
    if bank:
        driver.bank_name = "Zenith Bank Plc"
        driver.bank_account_name = "Tunde Bello"
        driver.bank_account_number = "9876543210"
    db.session.add(driver)
    db.session.commit()
    return driver


def make_part(
    vendor: Vendor,
    *,
    price: float = 2000.0,
    stock: int = 10,
    discounted_price: float | None = None,
    low_stock_alert: int = 2,
    name: str = "Brake pad",
) -> Part:
    part = Part(
        vendor_id=vendor.id,
        name=name,
        sku=f"SKU-{unique_stamp()}",
        price=price,
        discounted_price=discounted_price,
        stock_quantity=stock,
        low_stock_alert=low_stock_alert,
    )
    db.session.add(part)
    db.session.commit()
    return part


def place_order(customer: Customer, vendor: Vendor, lines, *, order_type: str = OrderType.COLLECTION, address_id=None, **extra):
    """Create an order through the service; ``lines`` is a list of ``(part, quantity)``."""
    req = CreateOrderRequest(
        customer_id=customer.id,
        vendor_id=vendor.id,
        items=[OrderLineRequest(part_id=part.id, quantity=qty) for part, qty in lines],
        order_type=order_type,
        address_id=address_id,
        **extra,
    )
    return OrderService(db.session).create_order(req)


def pay_order(order_id: int, provider: "ScriptedProvider", config=None):
    service = PaymentService(db.session, provider=provider, config=config or {})
    started = service.initialize_payment(order_id)
    assert started.ok, started.message
    return service.verify_payment(reference=started.value["reference"])


class ScriptedProvider(PaymentsProvider):
    """Gateway double whose outcomes are set per test."""

    name = "scripted"

    def __init__(
        self,
        *,
        verify_status: str = GatewayStatus.SUCCESSFUL,
        verify_amount: float | None = None,
        transfer_status: str = GatewayStatus.SUCCESSFUL,
        refund_status: str = GatewayStatus.SUCCESSFUL,
        initialize_error: Exception | None = None,
        transfer_error: Exception | None = None,
    ):
        self.verify_status = verify_status
        self.verify_amount = verify_amount
        self.transfer_status = transfer_status
        self.refund_status = refund_status
        self.initialize_error = initialize_error
        self.transfer_error = transfer_error
        self.amounts: dict[str, float] = {}
        self.calls: list[tuple[str, str]] = []

    def initialize(self, *, amount, currency, reference, customer_email, customer_name="", redirect_url="", metadata=None):
        self.calls.append(("initialize", reference))
        if self.initialize_error is not None:
            raise self.initialize_error
        self.amounts[reference] = float(amount)
        return PaymentInitializeResult(session_url=f"https://pay.test/{reference}", reference=reference, provider=self.name)

    def verify(self, *, transaction_id=None, reference=None):
        ref = reference or ""
        self.calls.append(("verify", ref))
        amount = self.verify_amount if self.verify_amount is not None else self.amounts.get(ref, 0.0)
        return PaymentVerifyResult(
            status=self.verify_status,
            amount=float(amount),
            currency="NGN",
            reference=ref,
            gateway_reference=str(transaction_id or f"gw-{ref}"),
            message="scripted",
        )

    def transfer(self, *, amount, currency, bank_code, account_number, reference, narration=""):
        self.calls.append(("transfer", reference))
        if self.transfer_error is not None:
            raise self.transfer_error
        return TransferResult(
            status=self.transfer_status,
            reference=reference,
            gateway_reference=f"trf-{reference}",
            message="scripted" if self.transfer_status != GatewayStatus.FAILED else "insufficient float",
        )

    def refund(self, *, gateway_reference, amount):
        self.calls.append(("refund", gateway_reference))
        return RefundResult(
            status=self.refund_status,
            gateway_reference=f"rfd-{gateway_reference}",
            message="scripted" if self.refund_status != GatewayStatus.FAILED else "refund window closed",
        )
