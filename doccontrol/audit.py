from datetime import datetime

from flask import has_request_context
from flask import session as flask_session
from sqlalchemy.orm import sessionmaker

from models import ActivityLog, engine


def log_action(
    user_id=None,
    doc_id=None,
    action=None,
    endpoint=None,
    *,
    entity_type=None,
    entity_id=None,
    description=None,
    payload=None,
    connection=None,
):
    """Persist an activity log entry."""
    if entity_type is None and entity_id is None and doc_id is not None:
        entity_type = "Document"
        entity_id = doc_id

    if user_id is None and has_request_context():
        user = flask_session.get("user")
        if user:
            user_id = user.get("id")

    data = {
        "user_id": user_id,
        "doc_id": doc_id,
        "action": action,
        "endpoint": endpoint,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "description": description,
        "payload": payload,
        "at": datetime.utcnow(),
    }

    if connection is not None:
        connection.execute(ActivityLog.__table__.insert(), [data])
    else:
        Session = sessionmaker(bind=engine)
        session = Session()
        try:
            session.execute(ActivityLog.__table__.insert(), [data])
            session.commit()
        finally:
            session.close()
