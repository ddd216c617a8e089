from typing import Optional

from sqlalchemy.orm import Session

from app.core.security import get_password_hash, verify_password
from app.models import User
from app.schemas.tokens import DeviceInfo, TokenPair
from app.services.token_service import TokenLifecycleService


MIN_PASSWORD_LENGTH = 8


def validate_password_strength(password: str) -> None:
    """Validate password meets minimum requirements. Raises ValueError if weak."""
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if not any(c.isupper() for c in password):
        raise ValueError("Password must contain at least one uppercase letter")
    if not any(c.islower() for c in password):
        raise ValueError("Password must contain at least one lowercase letter")
    if not any(c.isdigit() for c in password):
        raise ValueError("Password must contain at least one number")


class AuthService:
    """Credential checks in front of the token lifecycle."""

    @staticmethod
    def get_user_by_email(db: Session, email: str) -> Optional[User]:
        """Get a user by email address."""
        return db.query(User).filter(User.email == email.lower()).first()

    @staticmethod
    def get_user_by_id(db: Session, user_id: int) -> Optional[User]:
        """Get a user by ID."""
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def authenticate_user(db: Session, email: str, password: str) -> Optional[User]:
        """Authenticate a user by email and password."""
        user = AuthService.get_user_by_email(db, email)
        if not user:
            return None
        if not verify_password(password, user.password_hash):
            return None
        return user

    @staticmethod
    def create_user(
        db: Session,
        email: str,
        password: str,
        name: str,
        is_admin: bool = False,
    ) -> User:
        """Create a new user. Raises ValueError for weak passwords or taken emails."""
        validate_password_strength(password)
        if AuthService.get_user_by_email(db, email):
            raise ValueError("Email already registered")

        user = User(
            email=email.lower(),
            password_hash=get_password_hash(password),
            name=name,
            is_admin=is_admin,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    @staticmethod
    def login(
        db: Session,
        tokens: TokenLifecycleService,
        email: str,
        password: str,
        device_info: DeviceInfo,
    ) -> tuple[User, TokenPair]:
        """
        Authenticate user and issue a token pair for their device.
        Raises ValueError if authentication fails.
        """
        user = AuthService.authenticate_user(db, email, password)
        if not user:
            raise ValueError("Invalid email or password")

        pair = tokens.issue(user.id, device_info, custom_claims={"is_admin": user.is_admin})
        return user, pair

    @staticmethod
    def change_password(db: Session, user: User, current_password: str, new_password: str) -> None:
        """Verify the current password and store the new one. Raises ValueError on failure."""
        if not verify_password(current_password, user.password_hash):
            raise ValueError("Current password is incorrect")
        if current_password == new_password:
            raise ValueError("New password must be different from the current password")
        validate_password_strength(new_password)

        user.password_hash = get_password_hash(new_password)
        db.commit()
