# schemas/admin.py

from pydantic import BaseModel, EmailStr


# ------------------------
# Output Admin (per risposte API)
# ------------------------
class AdminOut(BaseModel):
    id: int
    email: EmailStr
    is_active: bool
    is_superadmin: bool

    class Config:
        # Pydantic v2: sostituisce orm_mode = True
        from_attributes = True
