from __future__ import annotations

import argparse
import uuid
from contextlib import contextmanager
from datetime import UTC, datetime
from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session

from projectclad_api.config import settings

metadata = MetaData()

project = Table(
    "project",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("shop", String(255), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("owner_customer_id", String(64), nullable=False, index=True),
    Column("po_number", String(255)),
    Column("company_name", String(255)),
    Column("created_at", BigInteger, nullable=False),
    Column("updated_at", BigInteger, nullable=False),
)

project_member = Table(
    "project_member",
    metadata,
    Column("id", String(36), primary_key=True),
    Column(
        "project_id",
        String(36),
        ForeignKey("project.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("customer_id", String(64), nullable=False, index=True),
    Column("role", String(16), nullable=False),
    UniqueConstraint("project_id", "customer_id", name="uq_project_member_customer"),
)

job = Table(
    "job",
    metadata,
    Column("id", String(36), primary_key=True),
    Column(
        "project_id",
        String(36),
        ForeignKey("project.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("name", String(255), nullable=False),
    Column("created_at", BigInteger, nullable=False),
    Column("is_locked", Boolean, nullable=False, default=False),
    Column("sort_order", Integer, nullable=False, default=0),
)

job_order_link = Table(
    "job_order_link",
    metadata,
    Column("id", String(36), primary_key=True),
    Column(
        "job_id",
        String(36),
        ForeignKey("job.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    ),
    Column("order_id", String(64), nullable=False, unique=True),
    Column("created_at", BigInteger, nullable=False),
)

job_item = Table(
    "job_item",
    metadata,
    Column("id", String(36), primary_key=True),
    Column(
        "job_id",
        String(36),
        ForeignKey("job.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("variant_id", String(64), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("price_snapshot", Numeric(12, 2), nullable=False),
    Column("sort_order", Integer, nullable=False, default=0),
    UniqueConstraint("job_id", "variant_id", name="uq_job_item_job_variant"),
)

project_share_token = Table(
    "project_share_token",
    metadata,
    Column("id", String(36), primary_key=True),
    Column(
        "project_id",
        String(36),
        ForeignKey("project.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("token", String(64), nullable=False, unique=True),
    Column("role", String(16), nullable=False),
    Column("created_at", BigInteger, nullable=False),
)

# job_id/item_id are NULL for wider scopes; scope_key carries the uniqueness
# because NULLs never collide in a unique index.
approval_request = Table(
    "approval_request",
    metadata,
    Column("id", String(36), primary_key=True),
    Column(
        "project_id",
        String(36),
        ForeignKey("project.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("job_id", String(36)),
    Column("item_id", String(36)),
    Column("scope_key", String(96), nullable=False),
    Column("requested_at", BigInteger, nullable=False),
    Column("approved_at", BigInteger),
    Column("approved_by_customer_id", String(64)),
    UniqueConstraint("project_id", "scope_key", name="uq_approval_request_scope"),
)

shop_settings = Table(
    "shop_settings",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("shop", String(255), nullable=False, unique=True),
    Column("pricing_password_hash", String(255)),
    Column("created_at", BigInteger, nullable=False),
    Column("updated_at", BigInteger, nullable=False),
)

Index("ix_job_project_sort", job.c.project_id, job.c.sort_order)
Index("ix_job_item_job_sort", job_item.c.job_id, job_item.c.sort_order)
Index("ix_approval_request_job", approval_request.c.project_id, approval_request.c.job_id)


def _enable_sqlite_foreign_keys(dbapi_connection, _record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@lru_cache(maxsize=8)
def get_engine(db_url: str | None = None) -> Engine:
    url = make_url(db_url or settings.db_url)
    if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(url, future=True)
    if url.get_backend_name() == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


@contextmanager
def session_scope(db_url: str | None = None):
    with Session(get_engine(db_url)) as session:
        yield session


def init_db(db_url: str | None = None) -> None:
    metadata.create_all(get_engine(db_url))


def upgrade_db(db_url: str | None = None, revision: str = "head") -> None:
    from alembic import command
    from alembic.config import Config

    root = Path(__file__).resolve().parents[1]
    cfg = Config()
    cfg.set_main_option("script_location", str(root / "alembic"))
    cfg.set_main_option("sqlalchemy.url", db_url or settings.db_url)
    get_engine(db_url)
    command.upgrade(cfg, revision)


def now_ms() -> int:
    return int(datetime.now(UTC).timestamp() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


def is_job_locked(session: Session, job_row) -> bool:
    if job_row.is_locked:
        return True
    linked = session.execute(
        select(job_order_link.c.id).where(job_order_link.c.job_id == job_row.id)
    ).first()
    return linked is not None


def delete_item_rows(session: Session, item_ids: list[str]) -> None:
    if not item_ids:
        return
    session.execute(approval_request.delete().where(approval_request.c.item_id.in_(item_ids)))
    session.execute(job_item.delete().where(job_item.c.id.in_(item_ids)))


def delete_job_rows(session: Session, job_id: str) -> None:
    session.execute(approval_request.delete().where(approval_request.c.job_id == job_id))
    session.execute(job_item.delete().where(job_item.c.job_id == job_id))
    session.execute(job_order_link.delete().where(job_order_link.c.job_id == job_id))
    session.execute(job.delete().where(job.c.id == job_id))


def delete_project_rows(session: Session, project_id: str) -> None:
    job_ids = session.execute(select(job.c.id).where(job.c.project_id == project_id)).scalars()
    for job_id in list(job_ids):
        delete_job_rows(session, job_id)
    for table in (approval_request, project_share_token, project_member):
        session.execute(table.delete().where(table.c.project_id == project_id))
    session.execute(project.delete().where(project.c.id == project_id))


def link_order(session: Session, job_id: str, order_id: str) -> None:
    session.execute(
        job_order_link.insert().values(
            id=new_id(), job_id=job_id, order_id=order_id, created_at=now_ms()
        )
    )


DEV_SHOP = "demo-shop.myshopify.com"


def ensure_dev_seed(db_url: str | None = None) -> None:
    with session_scope(db_url) as session:
        exists = session.execute(select(project.c.id).limit(1)).first()
        if exists:
            return
        t = now_ms()
        project_id = new_id()
        session.execute(
            project.insert().values(
                id=project_id,
                shop=DEV_SHOP,
                name="Demo Project",
                owner_customer_id="1001",
                po_number="PO-1000",
                company_name="Demo Cladding Co",
                created_at=t,
                updated_at=t,
            )
        )
        session.execute(
            project_member.insert(),
            [
                {"id": new_id(), "project_id": project_id, "customer_id": "1002", "role": "edit"},
                {"id": new_id(), "project_id": project_id, "customer_id": "1003", "role": "view"},
            ],
        )
        for position, (name, locked) in enumerate(
            [("Phase 1", True), ("Phase 2", False)], start=1
        ):
            job_id = new_id()
            session.execute(
                job.insert().values(
                    id=job_id,
                    project_id=project_id,
                    name=name,
                    created_at=t,
                    is_locked=locked,
                    sort_order=position,
                )
            )
            session.execute(
                job_item.insert(),
                [
                    {
                        "id": new_id(),
                        "job_id": job_id,
                        "variant_id": f"4000{i}",
                        "quantity": i * 2,
                        "price_snapshot": Decimal("12.50") * i,
                        "sort_order": i,
                    }
                    for i in range(1, 4)
                ],
            )
        session.commit()


def set_pricing_password(shop: str, password: str, db_url: str | None = None) -> None:
    from projectclad_api.pricing import hash_password

    hashed = hash_password(password)
    t = now_ms()
    with session_scope(db_url) as session:
        existing = session.execute(
            select(shop_settings.c.id).where(shop_settings.c.shop == shop)
        ).scalar_one_or_none()
        if existing is None:
            session.execute(
                shop_settings.insert().values(
                    id=new_id(),
                    shop=shop,
                    pricing_password_hash=hashed,
                    created_at=t,
                    updated_at=t,
                )
            )
        else:
            session.execute(
                shop_settings.update()
                .where(shop_settings.c.id == existing)
                .values(pricing_password_hash=hashed, updated_at=t)
            )
        session.commit()


def _cli() -> None:
    parser = argparse.ArgumentParser()
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("init")
    sub.add_parser("upgrade")
    pw = sub.add_parser("set-pricing-password")
    pw.add_argument("shop")
    pw.add_argument("password")
    link = sub.add_parser("link-order")
    link.add_argument("job_id")
    link.add_argument("order_id")
    args = parser.parse_args()
    if args.command == "init":
        init_db()
    elif args.command == "upgrade":
        upgrade_db()
    elif args.command == "set-pricing-password":
        try:
            set_pricing_password(args.shop, args.password)
        except ValueError as exc:
            parser.error(str(exc))
    elif args.command == "link-order":
        with session_scope() as session:
            link_order(session, args.job_id, args.order_id)
            session.commit()


if __name__ == "__main__":
    _cli()
