from __future__ import annotations

from sqlalchemy import inspect, select

from projectclad_api.db import ensure_dev_seed, job, job_item, project, session_scope, upgrade_db


def test_migration_upgrade_fresh_db(tmp_path):
    db_path = tmp_path / "fresh.db"
    db_url = f"sqlite:///{db_path}"

    upgrade_db(db_url=db_url)

    with session_scope(db_url) as session:
        insp = inspect(session.bind)
        tables = set(insp.get_table_names())

    expected = {
        "project",
        "project_member",
        "job",
        "job_order_link",
        "job_item",
        "project_share_token",
        "approval_request",
        "shop_settings",
        "alembic_version",
    }
    assert expected.issubset(tables)


def test_migration_then_seed(tmp_path):
    db_path = tmp_path / "seeded.db"
    db_url = f"sqlite:///{db_path}"

    upgrade_db(db_url=db_url)
    ensure_dev_seed(db_url=db_url)
    ensure_dev_seed(db_url=db_url)

    with session_scope(db_url) as session:
        projects = session.execute(select(project.c.id)).all()
        jobs = session.execute(select(job.c.name, job.c.is_locked).order_by(job.c.sort_order)).all()
        items = session.execute(select(job_item.c.id)).all()
    assert len(projects) == 1
    assert [tuple(j) for j in jobs] == [("Phase 1", True), ("Phase 2", False)]
    assert len(items) == 6


def test_seed_script_populates_demo_project():
    from projectclad_api.auth import Customer
    from projectclad_api.db import DEV_SHOP
    from projectclad_api.main import list_projects
    from scripts.seed import main as seed_main

    seed_main()

    listing = list_projects(customer=Customer(shop=DEV_SHOP, customer_id="1003"))
    assert [p["name"] for p in listing["projects"]] == ["Demo Project"]
    assert [j["isLocked"] for j in listing["projects"][0]["jobs"]] == [True, False]
