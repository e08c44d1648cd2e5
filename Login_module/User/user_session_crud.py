from sqlalchemy.orm import Session
from typing import Optional
from .user_model import User


def get_user_by_username(db: Session, username: str) -> Optional[User]:
    """
    Retrieve user by username.
    """
    return db.query(User).filter(User.username == username).first()

def get_user_by_id(db: Session, user_id: int) -> Optional[User]:
    """
    Retrieve user by ID.
    """
    return db.query(User).filter(User.id == user_id).first()


def create_user(
    db: Session,
    username: str,
    role: str = "clinician",
    name: Optional[str] = None,
    email: Optional[str] = None
) -> User:
    """
    Create a new user. Account provisioning lives outside this service; this is used by
    seeding scripts and tests.
    """
    user = User(username=username, role=role, name=name, email=email)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user
