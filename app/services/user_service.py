"""用户管理服务模块。"""

from datetime import datetime

from app.database import get_db
from app.models.schemas import User


def _row_to_user(row) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        display_name=row["display_name"],
        vendor_tier=row["vendor_tier"],
        wallet_balance=row["wallet_balance"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class UserService:
    """用户服务：创建、查询、商家等级设置。"""

    def create_user(
        self,
        email: str,
        display_name: str | None = None,
        vendor_tier: str | None = None,
    ) -> User:
        """
        创建用户，钱包余额初始为 0。

        Raises:
            ValueError: 邮箱已存在。
        """
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        db = get_db()
        try:
            cursor = db.execute(
                """INSERT INTO users (email, display_name, vendor_tier, wallet_balance, created_at, updated_at)
                   VALUES (?, ?, ?, 0, ?, ?)""",
                (email, display_name, vendor_tier, now, now),
            )
            db.commit()
            return User(
                id=cursor.lastrowid,
                email=email,
                display_name=display_name,
                vendor_tier=vendor_tier,
                wallet_balance=0,
                created_at=now,
                updated_at=now,
            )
        except Exception as e:
            db.rollback()
            if "UNIQUE constraint failed" in str(e):
                raise ValueError(f"邮箱 '{email}' 已存在") from e
            raise
        finally:
            db.close()

    def get_user(self, user_id: int) -> User | None:
        db = get_db()
        try:
            row = db.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return _row_to_user(row) if row else None
        finally:
            db.close()

    def set_vendor_tier(self, user_id: int, tier: str | None) -> None:
        """
        设置商家等级（用于条件费率匹配）。

        Raises:
            ValueError: 用户不存在。
        """
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            cursor = db.execute(
                "UPDATE users SET vendor_tier = ?, updated_at = ? WHERE id = ?",
                (tier, now, user_id),
            )
            db.commit()
            if cursor.rowcount == 0:
                raise ValueError(f"用户 id={user_id} 不存在")
        finally:
            db.close()
