# -*- coding: utf-8 -*-
"""
@FileName    : schemas.py
@Author      : jiaxin
@Date        : 2026/10/12
@Time        : 10:24
@Description :
"""
from pydantic import BaseModel
from typing import Optional


class HealthCheckResponse(BaseModel):
    status: str
    message: str
    version: Optional[str] = None


class MetadataTokenPayload(BaseModel):
    """元数据服务 token 接口返回的 JSON"""
    access_token: str
    expires_in: int
    token_type: str = "Bearer"

    @property
    def header(self) -> str:
        return f"{self.token_type} {self.access_token}"
