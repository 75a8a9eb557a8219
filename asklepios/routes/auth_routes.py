# asklepios/routes/auth_routes.py
from fastapi import APIRouter, Depends, HTTPException, Body, status
from sqlalchemy.orm import Session

from asklepios.db.session import get_db
from asklepios.models.user import User
from asklepios.auth.jwt import verify_password, create_access_token, create_refresh_token, verify_refresh_token, hash_password
from asklepios.schemas.blood_analysis import LoginIn, RefreshIn, RegisterIn, TokenOut

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _tokens_for(user: User) -> dict:
    claims = {"sub": str(user.id), "email": user.email}
    return {
        "access_token": create_access_token(claims),
        "refresh_token": create_refresh_token(claims),
        "token_type": "bearer",
    }


@router.post("/register", response_model=TokenOut, status_code=status.HTTP_201_CREATED)
def register(payload: RegisterIn = Body(...), db: Session = Depends(get_db)):
    """Create an account and return a token pair so the client is logged in immediately."""
    email = str(payload.email).lower()
    existing = db.query(User).filter(User.email == email).first()
    if existing:
        raise HTTPException(status_code=409, detail="User with this email already exists")

    user = User(email=email, hashed_password=hash_password(payload.password), name=payload.name)
    db.add(user)
    db.commit()
    db.refresh(user)
    return _tokens_for(user)


@router.post("/login", response_model=TokenOut)
def login(payload: LoginIn = Body(...), db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == str(payload.email).lower()).first()
    if not user or not verify_password(payload.password, user.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return _tokens_for(user)


@router.post("/refresh", response_model=TokenOut)
def refresh(payload: RefreshIn, db: Session = Depends(get_db)):
    """Exchange a refresh token for a new access token."""
    data = verify_refresh_token(payload.refresh_token)
    if not data or not data.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid refresh token")
    user = db.query(User).filter(User.id == str(data["sub"])).first()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    access = create_access_token({"sub": str(user.id), "email": user.email})
    return {"access_token": access, "token_type": "bearer"}
