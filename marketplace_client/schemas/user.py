from typing import Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field

class SessionUser(BaseModel):
    """
    /api/auth/me 與 login 回傳的 user；欄位名稱沿用後端 camelCase，
    未列出的欄位一律保留（extra="allow"）。
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: int | str
    email: str
    role: str
    first_name: Optional[str] = Field(None, alias="firstName")
    last_name: Optional[str] = Field(None, alias="lastName")
    supplier_status: Optional[str] = Field(None, alias="supplierStatus")
    email_verified: bool = Field(False, alias="emailVerified")
    is_staff_member: bool = Field(False, alias="isStaffMember")
    staff_permissions: Optional[Dict[str, List[str]]] = Field(None, alias="staffPermissions")
    locked_until: Optional[datetime] = Field(None, alias="lockedUntil")
