"""
学习进度数据库模型
"""

from sqlalchemy import Column, String, Integer, DateTime, JSON
from sqlalchemy.sql import func
from course_commerce.core.database import Base


class ProgressDB(Base):
    """学习进度表，按(user_id, course_id)一行"""

    __tablename__ = "user_progress"

    user_id = Column(String(128), primary_key=True, comment="用户ID")
    course_id = Column(String(50), primary_key=True, comment="课程ID")

    # moduleId -> {videos: {videoId -> {...}}, completion_percentage, completed_at}
    modules = Column(JSON, nullable=False, default=dict, comment="模块进度")
    completion_percentage = Column(Integer, nullable=False, default=0, comment="课程完成百分比")
    version = Column(Integer, nullable=False, default=0, comment="乐观并发版本号")

    created_at = Column(DateTime(timezone=True), server_default=func.now(), comment="创建时间")
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), comment="更新时间")

    __table_args__ = (
        {'comment': '用户学习进度表'}
    )
