"""
Database layer for the face clustering pipeline.

Finished clusters are stored as ``persons`` rows, each owning one
``face_instances`` row per clustered face.  A small ``runs`` table records
the parameters and outcome of every pipeline run.

:class:`PersistenceGateway` is the narrow repository the pipeline talks
to: :meth:`~PersistenceGateway.create_batch` writes a whole set of persons
and their faces in a single transaction, so a failed save leaves nothing
behind, and :meth:`~PersistenceGateway.fetch_all` reads the typed records
back.  The graph is append-only: saving never touches rows written by an
earlier run.

All interactions are implemented using SQLAlchemy Core.
"""

from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger
from sqlalchemy import (
    Table, Column, Integer, String, DateTime, JSON, MetaData,
    ForeignKey, create_engine, func, select, insert, update
)
from sqlalchemy.engine import Engine, Connection
from sqlalchemy.exc import SQLAlchemyError

from .clustering import assign_names
from .errors import PersistError
from .features import FaceCluster, FaceFeatures


def _make_metadata() -> MetaData:
    """Define and return SQLAlchemy metadata with our table definitions."""
    metadata = MetaData()
    # Table recording each run
    Table(
        "runs", metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("library_dir", String, nullable=False),
        Column("parameters", JSON, nullable=False),
        Column("status", String, nullable=False, default="running"),
        Column("start_time", DateTime, nullable=False),
        Column("end_time", DateTime, nullable=True),
        Column("n_assets", Integer, nullable=True),
        Column("n_faces", Integer, nullable=True),
        Column("n_persons", Integer, nullable=True),
        Column("command_line", String, nullable=True),
        Column("notes", String, nullable=True),
    )
    Table(
        "persons", metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("run_id", Integer, ForeignKey("runs.id"), nullable=True),
        Column("name", String, nullable=False),
        Column("created_at", DateTime, nullable=False),
        Column("last_updated", DateTime, nullable=False),
    )
    # One row per clustered face; features hold the serialised FaceFeatures
    Table(
        "face_instances", metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("person_id", Integer, ForeignKey("persons.id"), nullable=False),
        Column("asset_id", String, nullable=True),
        Column("features", JSON, nullable=False),
        Column("created_at", DateTime, nullable=False),
    )
    return metadata


_METADATA = _make_metadata()
runs_table = _METADATA.tables["runs"]
persons_table = _METADATA.tables["persons"]
faces_table = _METADATA.tables["face_instances"]


def _utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc).replace(tzinfo=None)


def init_db(db_path: Path) -> Engine:
    """Initialize the database and create tables if they do not exist.

    Parameters
    ----------
    db_path: Path
        Location of the SQLite database file.

    Returns
    -------
    sqlalchemy.Engine
        Connected engine instance.
    """
    engine = create_engine(f"sqlite:///{db_path}")
    _METADATA.create_all(engine)
    return engine


@dataclass
class NewPerson:
    """A person to be created together with its faces."""
    name: str
    faces: List[Tuple[Optional[str], FaceFeatures]] = field(default_factory=list)


@dataclass
class FaceInstance:
    id: int
    person_id: int
    asset_id: Optional[str]
    features: FaceFeatures
    created_at: _dt.datetime


@dataclass
class Person:
    id: int
    name: str
    created_at: _dt.datetime
    last_updated: _dt.datetime
    run_id: Optional[int] = None
    faces: List[FaceInstance] = field(default_factory=list)


@dataclass
class SaveResult:
    """Outcome of a committed save."""
    person_ids: List[int]
    face_count: int


class PersistenceGateway:
    """Repository for Person/FaceInstance records.

    Parameters
    ----------
    engine: sqlalchemy.Engine
        Engine whose database already has the tables (see :func:`init_db`).
    """
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @classmethod
    def from_path(cls, db_path: Path) -> "PersistenceGateway":
        return cls(init_db(db_path))

    def count_persons(self) -> int:
        with self.engine.connect() as conn:
            return self._count_persons(conn)

    def _count_persons(self, conn: Connection) -> int:
        return int(conn.execute(select(func.count()).select_from(persons_table)).scalar_one())

    def _insert_person(self, conn: Connection, person: NewPerson, run_id: Optional[int],
                       now: _dt.datetime) -> int:
        result = conn.execute(
            insert(persons_table).values(
                run_id=run_id, name=person.name, created_at=now, last_updated=now,
            )
        )
        return int(result.inserted_primary_key[0])

    def _insert_face_instances(self, conn: Connection, rows: List[Dict[str, Any]]) -> None:
        if rows:
            conn.execute(insert(faces_table), rows)

    def _commit(self, make_persons: Callable[[Connection], Sequence[NewPerson]],
                run_id: Optional[int]) -> SaveResult:
        person_ids: List[int] = []
        face_count = 0
        batch_size = 0
        try:
            with self.engine.begin() as conn:
                if conn.dialect.name == "sqlite":
                    # pysqlite defers BEGIN until the first write; take the write lock up front
                    conn.exec_driver_sql("BEGIN IMMEDIATE")
                new_persons = make_persons(conn)
                batch_size = len(new_persons)
                now = _utcnow()
                for person in new_persons:
                    person_id = self._insert_person(conn, person, run_id, now)
                    rows = [
                        {
                            "person_id": person_id,
                            "asset_id": asset_id,
                            "features": features.to_dict(),
                            "created_at": now,
                        }
                        for asset_id, features in person.faces
                    ]
                    self._insert_face_instances(conn, rows)
                    person_ids.append(person_id)
                    face_count += len(rows)
        except SQLAlchemyError as exc:
            logger.error(f"Rolled back batch of {batch_size} persons: {exc}")
            raise PersistError(f"Could not save {batch_size} persons: {exc}") from exc
        return SaveResult(person_ids=person_ids, face_count=face_count)

    def create_batch(self, new_persons: Sequence[NewPerson], run_id: Optional[int] = None) -> SaveResult:
        """Create all persons and their face instances in one transaction.

        Raises
        ------
        PersistError
            If anything fails; the whole batch is rolled back.
        """
        return self._commit(lambda conn: new_persons, run_id)

    def save_clusters(self, clusters: Sequence[FaceCluster], run_id: Optional[int] = None) -> SaveResult:
        """Persist each cluster as a new person named ``Person N``.

        Numbering continues after the persons already stored so names stay
        unique across runs.  The stored persons are counted inside the same
        transaction that inserts the new ones.
        """
        if not clusters:
            return SaveResult(person_ids=[], face_count=0)

        def named_persons(conn: Connection) -> List[NewPerson]:
            names = assign_names(clusters, start=self._count_persons(conn) + 1)
            return [
                NewPerson(name=name, faces=list(cluster.members()))
                for name, cluster in zip(names, clusters)
            ]

        return self._commit(named_persons, run_id)

    def fetch_all(self) -> List[Person]:
        """Return every stored person with its faces, ordered by id."""
        with self.engine.connect() as conn:
            person_rows = conn.execute(select(persons_table).order_by(persons_table.c.id)).mappings().all()
            face_rows = conn.execute(select(faces_table).order_by(faces_table.c.id)).mappings().all()
        persons = {
            row["id"]: Person(
                id=row["id"], name=row["name"], created_at=row["created_at"],
                last_updated=row["last_updated"], run_id=row["run_id"],
            )
            for row in person_rows
        }
        for row in face_rows:
            owner = persons.get(row["person_id"])
            if owner is None:
                continue
            owner.faces.append(FaceInstance(
                id=row["id"],
                person_id=row["person_id"],
                asset_id=row["asset_id"],
                features=FaceFeatures.from_dict(row["features"]),
                created_at=row["created_at"],
            ))
        return list(persons.values())


def record_run_start(conn: Connection, library_dir: Path, parameters: Dict[str, Any],
                     command_line: Optional[str] = None) -> int:
    """Insert a new run row and return its ID."""
    result = conn.execute(
        insert(runs_table).values(
            library_dir=str(library_dir),
            parameters=parameters,
            status="running",
            start_time=_utcnow(),
            command_line=command_line,
        )
    )
    conn.commit()
    return int(result.inserted_primary_key[0])


def record_run_end(conn: Connection, run_id: int, status: str, n_assets: int, n_faces: int,
                   n_persons: int, notes: Optional[str] = None) -> None:
    """Update a run row to mark it as finished.

    Parameters
    ----------
    conn: Connection
        Open database connection.
    run_id: int
        Primary key of the run to update.
    status: str
        Final status: ``"done"``, ``"failed"`` or ``"cancelled"``.
    n_assets, n_faces, n_persons: int
        Counts reached by the run.
    notes: str, optional
        Additional notes to store (e.g. error messages).
    """
    conn.execute(
        update(runs_table)
        .where(runs_table.c.id == run_id)
        .values(
            status=status,
            end_time=_utcnow(),
            n_assets=n_assets,
            n_faces=n_faces,
            n_persons=n_persons,
            notes=notes,
        )
    )
    conn.commit()


def get_run(conn: Connection, run_id: int) -> Optional[Dict[str, Any]]:
    """Retrieve a single run by ID as a dictionary, or ``None`` if not found."""
    row = conn.execute(select(runs_table).where(runs_table.c.id == run_id)).mappings().first()
    return dict(row) if row else None


def list_runs(conn: Connection, status: Optional[str] = None) -> List[Dict[str, Any]]:
    """Return a list of run records, optionally filtered by status."""
    query = select(runs_table)
    if status:
        query = query.where(runs_table.c.status == status)
    rows = conn.execute(query.order_by(runs_table.c.start_time.desc())).mappings().all()
    return [dict(row) for row in rows]
