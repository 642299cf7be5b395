"""
登录用户模型
"""

from typing import Optional
from pydantic import BaseModel


class Principal(BaseModel):
    """当前登录用户（uid、email、是否管理员）"""

    uid: str
    email: Optional[str] = None
    is_admin: bool = False
