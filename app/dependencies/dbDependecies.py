from fastapi import Depends
from sqlalchemy.orm import Session
from typing import Annotated

from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext

db_dependency = Annotated[Session, Depends(get_db)]

staff_context = Annotated[AuthContext, Depends(AuthDependencies.require_staff())]
admin_context = Annotated[AuthContext, Depends(AuthDependencies.require_admin())]
