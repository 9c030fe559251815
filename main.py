import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from database import FetchError, Store, build_store
from reconciler import (
    aggregate_attendance,
    aggregate_registrations,
    class_labels,
    family_listing,
    filter_views,
    group_by_class,
    reconcile,
)
from schemas import (
    ARRIVAL_SLOTS,
    AttendanceSummary,
    CreateStudent,
    Family,
    FamilyListing,
    MutationResult,
    RegistrationSummary,
    SaveFamily,
    Student,
    StudentView,
    SubmitAttendance,
    UpdateStudent,
)

# Environment setup
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

store = build_store()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    store.close()


app = FastAPI(title="Event Roster API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ----------------------- Utility Functions -----------------------

def get_store() -> Store:
    return store


def load_records(db: Store):
    try:
        return db.students.list(), db.families.list()
    except FetchError as e:
        raise HTTPException(status_code=502, detail=str(e))


def load_students(db: Store) -> List[Student]:
    try:
        return db.students.list()
    except FetchError as e:
        raise HTTPException(status_code=502, detail=str(e))


def check_result(result: MutationResult) -> MutationResult:
    if not result.success:
        raise HTTPException(status_code=404 if result.missing else 500, detail=result.error)
    return result


def require_student(db: Store, student_id: str) -> Student:
    try:
        student = db.students.get(student_id)
    except FetchError as e:
        raise HTTPException(status_code=502, detail=str(e))
    if student is None:
        raise HTTPException(status_code=404, detail="Student not found")
    return student


# ----------------------- Health -----------------------
@app.get("/")
def read_root():
    return {"message": "Event Roster API running"}


@app.get("/health")
def health():
    return {"ok": True, "time": datetime.now(timezone.utc).isoformat()}


@app.get("/test")
def test_database(db: Store = Depends(get_store)):
    response = {"backend": "✅ Running"}
    response.update(db.status())
    response["database_url_env"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name_env"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"
    return response


@app.get("/slots")
def list_slots():
    return {"slots": list(ARRIVAL_SLOTS)}


# ----------------------- Student Endpoints -----------------------
@app.post("/students", status_code=201)
def create_student(student: CreateStudent, db: Store = Depends(get_store)):
    data = student.model_dump(by_alias=True)
    result = check_result(db.students.create(data))
    return {"id": result.id, **data}


@app.get("/students")
def list_students(q: Optional[str] = None, limit: int = Query(100, ge=1), db: Store = Depends(get_store)):
    items = load_students(db)
    if q:
        needle = q.lower()
        items = [s for s in items if needle in s.name.lower() or needle in s.class_name.lower()]
    return {"items": items[:limit]}


@app.get("/students/{student_id}", response_model=Student)
def get_student(student_id: str, db: Store = Depends(get_store)):
    return require_student(db, student_id)


@app.put("/students/{student_id}", response_model=MutationResult)
def update_student(student_id: str, payload: UpdateStudent, db: Store = Depends(get_store)):
    return check_result(db.students.update(student_id, payload.model_dump(by_alias=True, exclude_unset=True)))


@app.patch("/students/{student_id}/attendance", response_model=MutationResult)
def submit_attendance(student_id: str, payload: SubmitAttendance, db: Store = Depends(get_store)):
    return check_result(db.students.update(student_id, payload.model_dump(exclude_unset=True)))


@app.delete("/students/{student_id}", response_model=MutationResult)
def delete_student(student_id: str, db: Store = Depends(get_store)):
    return check_result(db.students.delete(student_id))


# ----------------------- Family Endpoints -----------------------
@app.post("/families", response_model=MutationResult)
def save_family(payload: SaveFamily, db: Store = Depends(get_store)):
    require_student(db, payload.student_id)
    try:
        existing = db.families.find_by_student(payload.student_id)
    except FetchError as e:
        raise HTTPException(status_code=502, detail=str(e))
    data = payload.model_dump()
    if existing is not None:
        return check_result(db.families.update(str(existing.id), data))
    return check_result(db.families.create(data))


@app.get("/families", response_model=List[FamilyListing])
def list_families(db: Store = Depends(get_store)):
    students, families = load_records(db)
    return family_listing(students, families)


@app.get("/students/{student_id}/family", response_model=Family)
def get_family(student_id: str, db: Store = Depends(get_store)):
    try:
        family = db.families.find_by_student(student_id)
    except FetchError as e:
        raise HTTPException(status_code=502, detail=str(e))
    if family is None:
        raise HTTPException(status_code=404, detail="Not found")
    return family


@app.delete("/families/{family_id}", response_model=MutationResult)
def delete_family(family_id: str, db: Store = Depends(get_store)):
    return check_result(db.families.delete(family_id))


# ----------------------- Roster & Dashboard -----------------------
@app.get("/roster")
def roster(
    registration: Literal["all", "registered", "unregistered"] = "all",
    class_name: str = "all",
    q: Optional[str] = None,
    db: Store = Depends(get_store),
):
    students, families = load_records(db)
    views = reconcile(students, families)
    return {
        "classes": class_labels(views),
        "items": filter_views(views, registration=registration, class_name=class_name, search=q),
    }


@app.get("/roster/by-class", response_model=Dict[str, List[StudentView]])
def roster_by_class(db: Store = Depends(get_store)):
    students, families = load_records(db)
    return group_by_class(reconcile(students, families))


@app.get("/summary/attendance", response_model=AttendanceSummary)
def attendance_summary(db: Store = Depends(get_store)):
    return aggregate_attendance(load_students(db))


@app.get("/summary/registrations", response_model=RegistrationSummary)
def registration_summary(db: Store = Depends(get_store)):
    students, families = load_records(db)
    return aggregate_registrations(reconcile(students, families))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
