"""HTTP 请求体模型。

消息/文本/提示词字段允许缺省为空字符串，由 relay 统一抛出 ValidationError，
保证“空输入不产生任何持久化”的判断只在一个地方。
"""

from typing import Optional

from pydantic import BaseModel, Field


class LoginBody(BaseModel):
    password: str = ""


class ConversationCreate(BaseModel):
    title: Optional[str] = None


class MessageCreate(BaseModel):
    content: str = ""


class SpeechBody(BaseModel):
    text: str = ""
    voice: Optional[str] = None


class ImageBody(BaseModel):
    prompt: str = ""
    size: str = "1024x1024"


class ProjectCreate(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    code: Optional[str] = None
    language: Optional[str] = "javascript"


class SongCreate(BaseModel):
    title: str = Field(min_length=1)
    lyrics: str = Field(min_length=1)
    genre: Optional[str] = None
