# Seed a demo profile and print a bearer token for it
from sqlalchemy.orm import Session
from songmint.auth import create_access_token
from songmint.db import Base, SessionLocal, engine
from songmint.models import Profile

DEMO_USER_ID = "00000000-0000-0000-0000-000000000001"
DEMO_EMAIL = "demo@example.com"

def main():
    Base.metadata.create_all(bind=engine)
    db: Session = SessionLocal()
    try:
        profile = db.get(Profile, DEMO_USER_ID)
        if profile is None:
            profile = Profile(id=DEMO_USER_ID, email=DEMO_EMAIL, full_name="Demo User", credits_remaining=3)
            db.add(profile); db.commit()
        print("Seeded demo profile:", profile.email, "credits:", profile.credits_remaining)
        print("Bearer token:", create_access_token(DEMO_USER_ID, DEMO_EMAIL, expires_minutes=24 * 60))
    finally:
        db.close()

if __name__ == "__main__":
    main()
