import argparse
import asyncio
import os
import sys

from sqlalchemy import select

# Add the parent directory to sys.path to import piper modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from piper.core.database import async_session_maker, init_db
from piper.core.security import UserRole, hash_password, validate_password_strength
from piper.models.user import User


async def create_admin(email: str, password: str, role: str) -> None:
    await init_db()
    email = email.strip().lower()

    async with async_session_maker() as session:
        result = await session.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()

        if not user:
            user = User(
                email=email,
                password_hash=hash_password(password),
                display_name="Administrator",
                role=role,
                is_active=True,
            )
            session.add(user)
            print(f"Created {role} account: {email}")
        else:
            user.role = role
            user.is_active = True
            user.password_hash = hash_password(password)
            print(f"Account updated: {email} is now {role}, password reset")

        await session.commit()


def main() -> None:
    parser = argparse.ArgumentParser(description="Create or promote an administrator account")
    parser.add_argument("--email", default=os.getenv("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.getenv("ADMIN_PASSWORD"))
    parser.add_argument(
        "--role",
        choices=[UserRole.ADMIN.value, UserRole.SUPER_ADMIN.value],
        default=UserRole.SUPER_ADMIN.value,
    )
    args = parser.parse_args()

    if not args.email or not args.password:
        parser.error("--email and --password (or ADMIN_EMAIL / ADMIN_PASSWORD) are required")
    errors = validate_password_strength(args.password)
    if errors:
        parser.error("; ".join(errors))

    asyncio.run(create_admin(args.email, args.password, args.role))


if __name__ == "__main__":
    main()
