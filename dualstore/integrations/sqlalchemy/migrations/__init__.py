"""Versioned schema migrations for the relational backend.

Scripts live next to this module as ``V<version>__<description>.sql``.
Versions start at 1 and have no gaps. Each script is applied at most once,
in its own transaction together with the row recording it in
``schema_version``, so a failing script leaves nothing behind.

At startup the applied versions must be a prefix of the scripts shipped
with the package, with identical checksums. An unknown applied version, an
edited script or a gap aborts startup with ``ConfigurationError``.

Example:
    >>> runner = MigrationRunner(engine)
    >>> runner.migrate()
    [1, 2, 3]
"""

import hashlib
import logging
import re
from dataclasses import dataclass
from importlib import resources

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from dualstore.domain import utc_now
from dualstore.errors import ConfigurationError

from ..errors import translate_errors
from ..tables import schema_version

LOGGER = logging.getLogger(__name__)

SCRIPT_NAME = re.compile(r"V(?P<version>\d+)__(?P<description>\w+)\.sql")


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    sql: str

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.sql.encode("utf-8")).hexdigest()

    @property
    def statements(self) -> list[str]:
        """The script split into statements, without comment lines."""
        body = "\n".join(
            line for line in self.sql.splitlines() if not line.lstrip().startswith("--")
        )
        return [statement.strip() for statement in body.split(";") if statement.strip()]


def load_migrations(package: str = __name__) -> list[Migration]:
    """Read every migration script shipped in ``package``, ordered by version.

    Raises:
        ConfigurationError: If the versions do not form the sequence 1..N.
    """
    migrations = []
    for entry in resources.files(package).iterdir():
        match = SCRIPT_NAME.fullmatch(entry.name)
        if match is None:
            continue
        migrations.append(
            Migration(
                version=int(match["version"]),
                description=match["description"].replace("_", " "),
                sql=entry.read_text(encoding="utf-8"),
            )
        )
    migrations.sort(key=lambda m: m.version)

    versions = [m.version for m in migrations]
    if versions != list(range(1, len(versions) + 1)):
        raise ConfigurationError(f"Migration versions must run 1..N without gaps, got {versions}")
    return migrations


class MigrationRunner:
    """Brings a database up to the latest schema version.

    Args:
        engine: Target engine.
        migrations: Scripts to apply. Defaults to those shipped with the package.
    """

    def __init__(self, engine: Engine, migrations: list[Migration] | None = None):
        self.engine = engine
        self.migrations = migrations if migrations is not None else load_migrations()

    def applied(self) -> list[tuple[int, str]]:
        """(version, checksum) of every applied migration, in version order."""
        with translate_errors("read", schema_version.name):
            schema_version.create(self.engine, checkfirst=True)
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(schema_version.c.version, schema_version.c.checksum).order_by(
                        schema_version.c.version
                    )
                ).all()
        return [(row.version, row.checksum) for row in rows]

    def pending(self) -> list[Migration]:
        """Migrations not applied yet.

        Raises:
            ConfigurationError: If the recorded history does not match the
                shipped scripts.
        """
        applied = self.applied()
        if len(applied) > len(self.migrations):
            raise ConfigurationError(
                f"Database is at version {applied[-1][0]}, newer than the "
                f"{len(self.migrations)} migrations available"
            )
        for (version, checksum), migration in zip(applied, self.migrations):
            if version != migration.version:
                raise ConfigurationError(
                    f"Applied migration V{version} does not match expected V{migration.version}"
                )
            if checksum != migration.checksum:
                raise ConfigurationError(
                    f"Migration V{version} was modified after it was applied"
                )
        return self.migrations[len(applied) :]

    def migrate(self) -> list[int]:
        """Apply every pending migration.

        Returns:
            The versions applied by this call.
        """
        done = []
        for migration in self.pending():
            self._apply(migration)
            done.append(migration.version)
        LOGGER.info("Schema up to date", extra={"applied": done, "version": len(self.migrations)})
        return done

    def _apply(self, migration: Migration) -> None:
        extra = {"version": migration.version, "description": migration.description}
        try:
            with self.engine.begin() as conn:
                for statement in migration.statements:
                    conn.exec_driver_sql(statement)
                conn.execute(
                    schema_version.insert().values(
                        version=migration.version,
                        description=migration.description,
                        checksum=migration.checksum,
                        applied_at=utc_now(),
                    )
                )
        except SQLAlchemyError as err:
            # Includes losing a race: the other process recorded the version first.
            LOGGER.error("Migration failed", extra=extra)
            raise ConfigurationError(
                f"Migration V{migration.version} ({migration.description}) failed: {err}"
            ) from err
        LOGGER.info("Applied migration", extra=extra)
