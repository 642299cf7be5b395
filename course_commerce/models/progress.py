"""
学习进度数据模型
"""

from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field
from enum import Enum


class VideoProgress(BaseModel):
    """单个视频的观看进度"""

    watched_seconds: int = Field(default=0, ge=0)
    total_seconds: int = Field(default=0, ge=0)
    completion_percentage: int = Field(default=0, ge=0, le=100)
    completed_at: Optional[datetime] = None


class ModuleProgress(BaseModel):
    """模块进度：videoId -> VideoProgress"""

    videos: Dict[str, VideoProgress] = Field(default_factory=dict)
    completion_percentage: int = Field(default=0, ge=0, le=100)
    completed_at: Optional[datetime] = None


class ProgressRecord(BaseModel):
    """用户在某门课程下的进度记录"""

    user_id: str
    course_id: str
    modules: Dict[str, ModuleProgress] = Field(default_factory=dict)
    completion_percentage: int = Field(default=0, ge=0, le=100)
    version: int = Field(default=0, ge=0, description="乐观并发版本号")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def video(self, module_id: str, video_id: str) -> Optional[VideoProgress]:
        module = self.modules.get(module_id)
        return module.videos.get(video_id) if module else None


class WatchRejection(str, Enum):
    """观看事件未被记录的原因"""
    REGRESSION = "REGRESSION"  # 观看秒数小于已记录值
    NOT_ENROLLED = "NOT_ENROLLED"
    MODULE_LOCKED = "MODULE_LOCKED"
    INVALID_DURATION = "INVALID_DURATION"
    UNKNOWN_MODULE = "UNKNOWN_MODULE"
    UNKNOWN_VIDEO = "UNKNOWN_VIDEO"


class WatchEvent(BaseModel):
    """观看事件"""

    course_id: str = Field(..., min_length=1)
    module_id: str = Field(..., min_length=1)
    video_id: str = Field(..., min_length=1)
    watched_seconds: int = Field(..., ge=0)
    total_seconds: int = Field(..., ge=0)


class WatchResult(BaseModel):
    """观看事件处理结果"""

    recorded: bool
    reason: Optional[WatchRejection] = None
    video: Optional[VideoProgress] = None
    video_complete: bool = False
    module_complete: bool = False
    course_completion: int = 0


class ModuleState(BaseModel):
    """模块派生状态（供前端展示）"""

    module_id: str
    position: int
    title: str
    completion_percentage: int
    is_complete: bool
    is_unlocked: bool


class CourseProgressView(BaseModel):
    """课程进度视图"""

    course_id: str
    completion_percentage: int
    modules: List[ModuleState]
    record: Optional[ProgressRecord] = None


class VideoAccess(BaseModel):
    """视频签名访问地址"""

    video_id: str
    url: str
    expires_at: datetime
