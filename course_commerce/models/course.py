"""
课程目录相关数据模型
课程、模块、视频由目录维护，其他模块只通过ID引用
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator
from enum import Enum


class UnlockPolicy(str, Enum):
    """模块解锁策略"""
    NONE = "none"  # 始终解锁
    COMPLETE_PREVIOUS = "completePrevious"  # 完成上一模块后解锁


# 目录历史数据中出现过的解锁条件写法
_UNLOCK_ALIASES = {
    "complete_previous": UnlockPolicy.COMPLETE_PREVIOUS,
    "completeprevious": UnlockPolicy.COMPLETE_PREVIOUS,
    "none": UnlockPolicy.NONE,
    "": UnlockPolicy.NONE,
}


def _first(raw: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return default


class Video(BaseModel):
    """课程视频"""

    video_id: str = Field(..., min_length=1, description="视频ID")
    title: str = Field(default="", description="视频标题")
    duration_seconds: int = Field(default=0, ge=0, description="时长(秒)")
    secure_key: Optional[str] = Field(None, description="受保护资源key，报名后才可换取签名地址")
    is_preview: bool = Field(default=False, description="是否免费试看")

    @model_validator(mode="before")
    @classmethod
    def _accept_catalog_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "video_id" in data:
            return data
        return {
            "video_id": _first(data, "videoId", "id"),
            "title": _first(data, "title", default=""),
            "duration_seconds": _first(data, "durationSeconds", "duration", default=0),
            "secure_key": _first(data, "secureKey", "videoKey", "url"),
            "is_preview": bool(data.get("isPreview", False)),
        }


class Module(BaseModel):
    """课程模块"""

    module_id: str = Field(..., min_length=1, description="模块ID")
    position: int = Field(..., ge=0, description="模块在课程中的序号")
    title: str = Field(default="", description="模块标题")
    unlock_policy: UnlockPolicy = Field(default=UnlockPolicy.NONE, description="解锁策略")
    videos: List[Video] = Field(default_factory=list, description="视频列表(有序)")

    @field_validator("unlock_policy", mode="before")
    @classmethod
    def _normalize_policy(cls, v):
        if isinstance(v, str):
            alias = _UNLOCK_ALIASES.get(v.strip().lower())
            if alias is not None:
                return alias
        return v

    @property
    def video_ids(self) -> List[str]:
        return [video.video_id for video in self.videos]

    def get_video(self, video_id: str) -> Optional[Video]:
        return next((v for v in self.videos if v.video_id == video_id), None)


class Course(BaseModel):
    """课程基础模型"""

    course_id: str = Field(..., min_length=1, description="课程ID")
    title: str = Field(..., description="课程名称")
    category: Optional[str] = Field(None, description="课程分类")
    price: int = Field(..., ge=0, description="价格(最小货币单位)")
    currency: str = Field(default="INR", description="币种")
    is_published: bool = Field(default=False, description="是否已发布")
    total_enrollments: int = Field(default=0, ge=0, description="报名人数")
    modules: List[Module] = Field(default_factory=list, description="模块列表(有序)")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("modules", mode="before")
    @classmethod
    def _normalize_modules(cls, v):
        """兼容目录历史写法（id/moduleKey、title/moduleTitle、unlockCondition）"""
        if not isinstance(v, list):
            return v
        normalized = []
        for idx, raw in enumerate(v):
            if isinstance(raw, dict) and "module_id" not in raw:
                raw = {
                    "module_id": _first(raw, "moduleId", "moduleKey", "id", default=f"M{idx + 1}"),
                    "position": _first(raw, "position", "order", default=idx),
                    "title": _first(raw, "title", "moduleTitle", default=f"Module {idx + 1}"),
                    "unlock_policy": _first(raw, "unlockPolicy", "unlockCondition", default="none"),
                    "videos": raw.get("videos") or [],
                }
            normalized.append(raw)
        return normalized

    @model_validator(mode="after")
    def _order_modules(self):
        self.modules = sorted(self.modules, key=lambda m: m.position)
        return self

    def get_module(self, module_id: str) -> Optional[Module]:
        return next((m for m in self.modules if m.module_id == module_id), None)

    def module_index(self, module_id: str) -> int:
        for idx, module in enumerate(self.modules):
            if module.module_id == module_id:
                return idx
        return -1

    def find_video(self, video_id: str) -> Optional[Video]:
        for module in self.modules:
            video = module.get_video(video_id)
            if video:
                return video
        return None


class CourseUpdate(BaseModel):
    """更新课程模型（管理员）"""

    title: Optional[str] = None
    category: Optional[str] = None
    price: Optional[int] = Field(None, ge=0)
    is_published: Optional[bool] = None
    modules: Optional[List[Module]] = None
