import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from clinic_backend.core import config
from clinic_backend.database import Base, engine, ensure_appointment_schema, ensure_patient_schema
from clinic_backend.models import appointment, availability, patient, staff  # noqa: F401
from clinic_backend.routes import appointment_routes, auth_routes, patient_routes, staff_routes, transfer_routes

app = FastAPI(title='Clinic Scheduling API')

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)


@app.on_event('startup')
def initialize_database() -> None:
    config.validate_runtime_config()
    try:
        Base.metadata.create_all(bind=engine)
        ensure_appointment_schema()
        ensure_patient_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')


@app.get('/')
def root():
    return {'status': 'Clinic API Running'}


app.include_router(auth_routes.router, prefix='/auth')
app.include_router(staff_routes.router, prefix='/staff')
app.include_router(patient_routes.router, prefix='/patients')
app.include_router(appointment_routes.router, prefix='/appointments')
app.include_router(transfer_routes.router, prefix='/transfers')
