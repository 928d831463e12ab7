import logging
import math

from fastapi import Depends, FastAPI, Header, HTTPException
from sqlalchemy.orm import Session

from database import SessionLocal
from scheduler import SchedulerManager
from services import BudgetStatusService, RecurringScheduleRepairService

app = FastAPI(title="Finx Jobs")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(x_user_id: int = Header(...)) -> int:
    if x_user_id <= 0:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.get("/health")
def health():
    return {"status": "ok", "scheduler_running": scheduler_manager.scheduler.running}


@app.post("/api/jobs/{job_id}/run")
def run_job(job_id: str):
    try:
        result = scheduler_manager.run_job(job_id, source="api")
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown job {job_id}") from exc
    return {"job": job_id, "result": result}


@app.post("/api/recurring/fix-dates")
def fix_recurring_dates(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    fixes = RecurringScheduleRepairService(db, user_id).repair()
    logging.info(f"fix_recurring_dates: user_id={user_id} fixed={len(fixes)}")
    return {
        "success": True,
        "message": f"Fixed {len(fixes)} recurring transactions",
        "updates": [fix.model_dump(mode="json") for fix in fixes],
    }


@app.get("/api/budget/status")
def budget_status(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    status = BudgetStatusService(db, user_id).status()
    payload = status.model_dump(mode="json")
    pct = status.percentage_used
    payload["percentage_used"] = None if math.isinf(pct) else round(pct, 1)
    payload["over_budget"] = math.isinf(pct) or pct >= 100
    return payload


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
