from pydantic import BaseModel, EmailStr, Field
from datetime import datetime
from typing import Optional, List, Dict, Any


# User schemas
class UserBase(BaseModel):
    username: str = Field(..., min_length=3, max_length=30)
    email: EmailStr


class UserCreate(UserBase):
    password: str = Field(..., min_length=8, max_length=100)


class UserLogin(BaseModel):
    username: str = Field(..., description="Username or email")
    password: str


class User(BaseModel):
    id: str
    username: str
    created_at: datetime

    class Config:
        from_attributes = True


class UserWithEmail(User):
    email: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserWithEmail


class LoginRecord(BaseModel):
    id: str
    login_timestamp: datetime

    class Config:
        from_attributes = True


# Project schemas
class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=3, max_length=30)
    icon_url: Optional[str] = None
    public_permissions: int = Field(0, ge=0)


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=3, max_length=30)
    icon_url: Optional[str] = None
    public_permissions: Optional[int] = Field(None, ge=0)


class Project(BaseModel):
    id: str
    name: str
    owner: str
    icon_url: Optional[str] = None
    public_permissions: int
    created_at: datetime

    class Config:
        from_attributes = True


class ProjectWithPermissions(Project):
    permissions: int


class OwnershipTransfer(BaseModel):
    user_id: str


# Member schemas
class MemberInvite(BaseModel):
    user_ids: List[str] = Field(..., min_length=1, max_length=50)
    permissions: Optional[int] = Field(None, ge=0)


class MemberUpdate(BaseModel):
    permissions: int = Field(..., ge=0)


class ProjectMember(BaseModel):
    id: str
    project_id: str
    user_id: str
    permissions: int
    accepted: bool
    created_at: datetime
    user: Optional[User] = None

    class Config:
        from_attributes = True


class Invitation(BaseModel):
    membership_id: str
    project: Project
    permissions: int


# Task group schemas
class TaskGroupCreate(BaseModel):
    name: str = Field(..., min_length=3, max_length=30)
    position: Optional[int] = Field(None, ge=0)


class TaskGroupUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=3, max_length=30)
    position: Optional[int] = Field(None, ge=0)


class TaskGroup(BaseModel):
    id: str
    project_id: str
    name: str
    position: int

    class Config:
        from_attributes = True


# Sub-task schemas
class SubTaskCreate(BaseModel):
    body: str = Field(..., min_length=3, max_length=90)
    weight: int = Field(1, ge=0)
    assignee: Optional[str] = None
    position: Optional[int] = Field(None, ge=0)


class SubTaskUpdate(BaseModel):
    body: Optional[str] = Field(None, min_length=3, max_length=90)
    weight: Optional[int] = Field(None, ge=0)
    completed: Optional[bool] = None
    assignee: Optional[str] = None
    position: Optional[int] = Field(None, ge=0)


class SubTask(BaseModel):
    id: str
    task_id: str
    project_id: str
    assignee: Optional[str] = None
    body: str
    weight: int
    completed: bool
    position: int

    class Config:
        from_attributes = True


# Task schemas
class TaskCreate(BaseModel):
    name: str = Field(..., min_length=3, max_length=30)
    information: Optional[str] = None
    due: Optional[datetime] = None
    primary_colour: Optional[str] = Field(None, max_length=32)
    accent_colour: Optional[str] = Field(None, max_length=32)
    custom_metadata: Optional[Dict[str, Any]] = None
    position: Optional[int] = Field(None, ge=0)


class TaskUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=3, max_length=30)
    information: Optional[str] = None
    due: Optional[datetime] = None
    primary_colour: Optional[str] = Field(None, max_length=32)
    accent_colour: Optional[str] = Field(None, max_length=32)
    custom_metadata: Optional[Dict[str, Any]] = None
    task_group_id: Optional[str] = None
    position: Optional[int] = Field(None, ge=0)


class Task(BaseModel):
    id: str
    project_id: str
    task_group_id: str
    name: str
    information: Optional[str] = None
    creator: Optional[str] = None
    due: Optional[datetime] = None
    primary_colour: Optional[str] = None
    accent_colour: Optional[str] = None
    custom_metadata: Optional[Dict[str, Any]] = None
    position: int
    created_at: datetime

    class Config:
        from_attributes = True


class TaskWithSubTasks(Task):
    sub_tasks: List[SubTask] = []


# Audit schemas
class Audit(BaseModel):
    id: str
    auditor: str
    project_id: str
    body: str
    timestamp: datetime

    class Config:
        from_attributes = True
