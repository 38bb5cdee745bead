# A/Bテスト PostgreSQL リポジトリ
"""
PostgreSQL 実装のリポジトリ

テーブル（スキーマ管理は外部）:
- ab_experiments (id, name, status, configuration JSONB, description,
  start_date, end_date)
- ab_assignments (experiment_id, subject_id, variant_id, strategy,
  assigned_at) UNIQUE (experiment_id, subject_id)
- ab_metric_events (experiment_id, variant_id, subject_id, event_type,
  value, timestamp)

一意制約違反（psycopg2.errors.UniqueViolation）は DuplicateAssignmentError
に変換する。呼び出し側（VariantAssignmentService）が勝者を再読込する。
"""

import logging
from typing import List, Optional

from psycopg2 import errors as pg_errors

from src.ab_testing.repository import (
    AssignmentRepository,
    ExperimentRepository,
    MetricEventRepository,
)
from src.db.connection import DatabaseConnection
from src.models.errors import DuplicateAssignmentError
from src.models.experiment import Assignment, Experiment, MetricEvent


logger = logging.getLogger(__name__)


class PostgresExperimentRepository(ExperimentRepository):
    """ab_experiments テーブルのリポジトリ"""

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def get(self, experiment_id: str) -> Optional[Experiment]:
        with self.db.get_cursor() as cur:
            cur.execute(
                """
                SELECT id, name, status, configuration, description,
                       start_date, end_date
                FROM ab_experiments
                WHERE id = %s
                """,
                (str(experiment_id),),
            )
            row = cur.fetchone()
        return Experiment.from_row(row) if row else None

    def save(self, experiment: Experiment) -> None:
        with self.db.get_cursor() as cur:
            cur.execute(
                """
                INSERT INTO ab_experiments
                (id, name, status, configuration, description, start_date, end_date)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    status = EXCLUDED.status,
                    configuration = EXCLUDED.configuration,
                    description = EXCLUDED.description,
                    start_date = EXCLUDED.start_date,
                    end_date = EXCLUDED.end_date
                """,
                (
                    experiment.id,
                    experiment.name,
                    experiment.status.value,
                    experiment.configuration_json(),
                    experiment.description,
                    experiment.start_date,
                    experiment.end_date,
                ),
            )

    def list(self) -> List[Experiment]:
        with self.db.get_cursor() as cur:
            cur.execute(
                """
                SELECT id, name, status, configuration, description,
                       start_date, end_date
                FROM ab_experiments
                ORDER BY name
                """
            )
            rows = cur.fetchall()
        return [Experiment.from_row(row) for row in rows]


class PostgresAssignmentRepository(AssignmentRepository):
    """ab_assignments テーブルのリポジトリ"""

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def get(self, experiment_id: str, subject_id: str) -> Optional[Assignment]:
        with self.db.get_cursor() as cur:
            cur.execute(
                """
                SELECT experiment_id, subject_id, variant_id, strategy, assigned_at
                FROM ab_assignments
                WHERE experiment_id = %s AND subject_id = %s
                """,
                (experiment_id, subject_id),
            )
            row = cur.fetchone()
        if row is None:
            return None
        return Assignment(
            experiment_id=str(row[0]),
            subject_id=row[1],
            variant_id=row[2],
            strategy=row[3],
            assigned_at=row[4],
        )

    def create(self, assignment: Assignment) -> Assignment:
        try:
            with self.db.get_cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO ab_assignments
                    (experiment_id, subject_id, variant_id, strategy, assigned_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        assignment.experiment_id,
                        assignment.subject_id,
                        assignment.variant_id,
                        assignment.strategy,
                        assignment.assigned_at,
                    ),
                )
        except pg_errors.UniqueViolation as e:
            logger.info(
                f"割り当ての一意制約違反: experiment={assignment.experiment_id}, "
                f"subject={assignment.subject_id}"
            )
            raise DuplicateAssignmentError(
                assignment.experiment_id, assignment.subject_id
            ) from e
        return assignment

    def list_for_experiment(self, experiment_id: str) -> List[Assignment]:
        with self.db.get_cursor() as cur:
            cur.execute(
                """
                SELECT experiment_id, subject_id, variant_id, strategy, assigned_at
                FROM ab_assignments
                WHERE experiment_id = %s
                ORDER BY assigned_at
                """,
                (experiment_id,),
            )
            rows = cur.fetchall()
        return [
            Assignment(
                experiment_id=str(row[0]),
                subject_id=row[1],
                variant_id=row[2],
                strategy=row[3],
                assigned_at=row[4],
            )
            for row in rows
        ]


class PostgresMetricEventRepository(MetricEventRepository):
    """ab_metric_events テーブルのリポジトリ（追記専用）"""

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def append(self, event: MetricEvent) -> None:
        with self.db.get_cursor() as cur:
            cur.execute(
                """
                INSERT INTO ab_metric_events
                (experiment_id, variant_id, subject_id, event_type, value, timestamp)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    event.experiment_id,
                    event.variant_id,
                    event.subject_id,
                    event.event_type,
                    event.value,
                    event.timestamp,
                ),
            )

    def list_for_experiment(self, experiment_id: str) -> List[MetricEvent]:
        with self.db.get_cursor() as cur:
            cur.execute(
                """
                SELECT experiment_id, variant_id, subject_id, event_type, value, timestamp
                FROM ab_metric_events
                WHERE experiment_id = %s
                ORDER BY timestamp
                """,
                (experiment_id,),
            )
            rows = cur.fetchall()
        return [
            MetricEvent(
                experiment_id=str(row[0]),
                variant_id=row[1],
                subject_id=row[2],
                event_type=row[3],
                value=float(row[4]),
                timestamp=row[5],
            )
            for row in rows
        ]
