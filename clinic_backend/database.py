from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

from clinic_backend.core import config


connect_args = {'check_same_thread': False} if config.DATABASE_URL.startswith('sqlite') else {}

engine = create_engine(config.DATABASE_URL, echo=config.DATABASE_ECHO, connect_args=connect_args)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_appointment_schema_checked = False
_patient_schema_checked = False


def ensure_appointment_schema() -> None:
    global _appointment_schema_checked

    if _appointment_schema_checked:
        return

    with _schema_lock:
        if _appointment_schema_checked:
            return

        inspector = inspect(engine)

        if 'appointments' not in inspector.get_table_names():
            _appointment_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('appointments')}
        migration_steps = [
            ('duration_minutes', 'ALTER TABLE appointments ADD COLUMN duration_minutes INTEGER'),
            ('notes', 'ALTER TABLE appointments ADD COLUMN notes VARCHAR'),
            ('transferred_from_staff_id', 'ALTER TABLE appointments ADD COLUMN transferred_from_staff_id INTEGER'),
            ('transferred_from', 'ALTER TABLE appointments ADD COLUMN transferred_from VARCHAR'),
            ('transferred_at', 'ALTER TABLE appointments ADD COLUMN transferred_at TIMESTAMP'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_staff_date ON appointments(staff_id, date)')
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_patient ON appointments(patient_id)')
            )

        _appointment_schema_checked = True


def ensure_patient_schema() -> None:
    global _patient_schema_checked

    if _patient_schema_checked:
        return

    with _schema_lock:
        if _patient_schema_checked:
            return

        inspector = inspect(engine)

        if 'patients' not in inspector.get_table_names():
            _patient_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('patients')}
        migration_steps = [
            ('report_access_staff_ids', 'ALTER TABLE patients ADD COLUMN report_access_staff_ids JSON'),
            ('transferred_at', 'ALTER TABLE patients ADD COLUMN transferred_at TIMESTAMP'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_patients_assigned_staff ON patients(assigned_staff_id)')
            )

        _patient_schema_checked = True
