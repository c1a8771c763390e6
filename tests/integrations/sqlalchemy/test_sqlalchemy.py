import pytest

pytest.importorskip("sqlalchemy")

from sqlalchemy import Column, Integer, String, create_engine, text  # noqa: E402
from sqlalchemy.exc import OperationalError  # noqa: E402
from sqlalchemy.orm import declarative_base, sessionmaker  # noqa: E402

import crumbtrail  # noqa: E402
from crumbtrail.consts import FILTERED  # noqa: E402
from crumbtrail.integrations.sqlalchemy import SqlalchemyIntegration  # noqa: E402


Base = declarative_base()  # noqa: N806


class Person(Base):
    __tablename__ = "person"
    id = Column(Integer, primary_key=True)
    name = Column(String(250), nullable=False)
    password = Column(String(250))


@pytest.fixture
def session():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine)  # noqa: N806
    session = Session()
    yield session
    session.close()
    engine.dispose()


def db_crumbs(scope):
    return [c for c in scope.breadcrumbs if c["category"] == "db"]


def test_orm_writes(crumbtrail_init, session):
    client = crumbtrail_init(
        integrations=[SqlalchemyIntegration(slow_query_threshold_ms=60_000)]
    )

    with client.scopes.request_scope() as scope:
        bob = Person(name="Bob", password="hunter2")
        session.add(bob)
        session.commit()

        bob.name = "Robert"
        bob.password = "swordfish"
        session.commit()

        session.delete(bob)
        session.commit()

    crumbs = db_crumbs(scope)
    assert [c["message"] for c in crumbs] == [
        "Created Person (ID: 1)",
        "Updated Person (ID: 1)",
        "Destroyed Person (ID: 1)",
    ]
    assert crumbs[0]["data"] == {"model": "Person", "id": "1"}
    assert crumbs[1]["data"]["changes"] == {"name": "Robert", "password": FILTERED}
    assert all(c["type"] == "query" for c in crumbs)


def test_slow_queries(crumbtrail_init, session):
    client = crumbtrail_init(
        integrations=[SqlalchemyIntegration(slow_query_threshold_ms=0)]
    )

    with client.scopes.request_scope() as scope:
        session.execute(text("SELECT 1"))

    (crumb,) = [c for c in db_crumbs(scope) if "SELECT 1" in c["message"]]
    assert crumb["level"] == "warning"
    assert crumb["message"].startswith("Slow query (")
    assert crumb["message"].endswith("ms): SELECT 1")
    assert crumb["data"]["statement"] == "SELECT 1"
    assert crumb["data"]["duration_ms"] >= 0


def test_fast_queries_are_not_recorded(crumbtrail_init, session):
    client = crumbtrail_init(
        integrations=[SqlalchemyIntegration(slow_query_threshold_ms=60_000)]
    )

    with client.scopes.request_scope() as scope:
        session.execute(text("SELECT 1"))

    assert db_crumbs(scope) == []


def test_long_statements_are_truncated(crumbtrail_init, session):
    client = crumbtrail_init(
        integrations=[SqlalchemyIntegration(slow_query_threshold_ms=0)]
    )
    statement = "SELECT %s" % ", ".join(["1"] * 300)

    with client.scopes.request_scope() as scope:
        session.execute(text(statement))

    (crumb,) = [c for c in db_crumbs(scope) if "SELECT 1, 1" in c["message"]]
    assert len(crumb["message"]) == 200
    assert len(crumb["data"]["statement"]) == 200


def test_failed_query(crumbtrail_init, capture_events, session):
    client = crumbtrail_init(integrations=[SqlalchemyIntegration()])
    events = capture_events()

    with client.scopes.request_scope():
        with pytest.raises(OperationalError):
            session.execute(text("SELECT * FROM missing_table"))
        crumbtrail.capture_message("after failure")

    (event,) = events
    (crumb,) = event["breadcrumbs"]["values"]
    assert crumb["level"] == "error"
    assert crumb["category"] == "db"
    assert crumb["message"].startswith("Query failed: OperationalError: ")
    assert crumb["data"]["statement"] == "SELECT * FROM missing_table"
    assert crumb["data"]["error"] == "OperationalError"


def test_not_recorded_when_integration_is_disabled(crumbtrail_init, session):
    client = crumbtrail_init()

    with client.scopes.request_scope() as scope:
        session.add(Person(name="Alice"))
        session.commit()

    assert db_crumbs(scope) == []


def test_outside_of_a_request(crumbtrail_init, session):
    crumbtrail_init(integrations=[SqlalchemyIntegration(slow_query_threshold_ms=0)])

    session.add(Person(name="Alice"))
    session.commit()
    assert session.query(Person).count() == 1
