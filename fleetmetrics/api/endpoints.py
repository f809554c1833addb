import datetime
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from typing import List, Dict, Any, Optional
from ..db import get_db
from ..errors import TaskNotFoundError, VehicleLockedError, VehicleNotFoundError
from ..models import Vehicle
from ..persistence import get_metrics_records

router = APIRouter()

class FleetRunRequest(BaseModel):
    date: Optional[datetime.date] = None
    chunk_size: Optional[int] = Field(None, ge=1)

def get_orchestrator(request: Request):
    return request.app.state.orchestrator

def get_task_computation(request: Request):
    return request.app.state.task_computation

def get_report_processor(request: Request):
    return request.app.state.report_processor

def _task_result(result) -> Dict[str, Any]:
    return {
        "task_id": result.task_id,
        "previous_status": result.transition.previous.value,
        "status": result.transition.status.value,
        "metrics": result.record.to_dict() if result.record else None
    }

@router.post("/fleet-runs", status_code=202)
def start_fleet_run(request: FleetRunRequest, orchestrator=Depends(get_orchestrator)) -> Dict[str, Any]:
    """Dispatch a fleet run for a date (yesterday by default)."""
    run = orchestrator.dispatch_fleet_computation(request.date, request.chunk_size)
    return run.progress()

@router.get("/fleet-runs/{run_id}")
def get_fleet_run(run_id: str, orchestrator=Depends(get_orchestrator)) -> Dict[str, Any]:
    """Get aggregate progress of a fleet run."""
    run = orchestrator.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Fleet run {run_id} not found")
    return run.progress()

@router.post("/fleet-runs/{run_id}/cancel")
def cancel_fleet_run(run_id: str, orchestrator=Depends(get_orchestrator)) -> Dict[str, Any]:
    """Cancel a fleet run; already written records are kept."""
    if not orchestrator.cancel(run_id):
        raise HTTPException(status_code=404, detail=f"Fleet run {run_id} not found")
    return orchestrator.get_run(run_id).progress()

@router.post("/tasks/{task_id}/recompute")
def recompute_task(task_id: int, computation=Depends(get_task_computation)) -> Dict[str, Any]:
    """Recompute one task's metrics and settle its status."""
    try:
        result = computation.run(task_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except VehicleLockedError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return _task_result(result)

@router.post("/vehicles/{vehicle_id}/report-cycle")
def process_report_cycle(vehicle_id: int, processor=Depends(get_report_processor)) -> Dict[str, Any]:
    """Refresh the vehicle's current task after new reports were ingested."""
    try:
        result = processor.process(vehicle_id)
    except VehicleNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except VehicleLockedError as e:
        raise HTTPException(status_code=409, detail=str(e))

    transition = result.transition
    return {
        "vehicle_id": vehicle_id,
        "task_id": result.task.id if result.task else None,
        "is_in_zone": result.is_in_zone,
        "previous_status": transition.previous.value if transition else None,
        "status": transition.status.value if transition else None,
        "metrics": result.record.to_dict() if result.record else None
    }

@router.post("/vehicles/{vehicle_id}/tasks/finalize")
def finalize_tasks(
    vehicle_id: int,
    date: Optional[datetime.date] = Query(None, description="Task date (today by default)"),
    computation=Depends(get_task_computation)
) -> List[Dict[str, Any]]:
    """Settle every open task of the date whose window has elapsed."""
    try:
        computation.vehicles.get_vehicle(vehicle_id)
        results = computation.finalize_ended_tasks(vehicle_id, date or computation.clock().date())
    except VehicleNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except VehicleLockedError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return [_task_result(result) for result in results]

@router.get("/vehicles/{vehicle_id}/metrics")
def get_vehicle_metrics(
    vehicle_id: int,
    db: Session = Depends(get_db),
    date: Optional[datetime.date] = Query(None, description="Only records for this date")
) -> List[Dict[str, Any]]:
    """Get metrics records for a vehicle."""
    if db.query(Vehicle).filter(Vehicle.id == vehicle_id).first() is None:
        raise HTTPException(status_code=404, detail=f"Vehicle {vehicle_id} not found")

    try:
        records = get_metrics_records(db, vehicle_id, date)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")

    result = []
    for record in records:
        result.append({
            "id": record.id,
            "vehicle_id": record.vehicle_id,
            "date": record.date.isoformat(),
            "task_id": record.task_id,
            "traveled_distance_km": record.traveled_distance_km,
            "work_duration_sec": record.work_duration_sec,
            "stoppage_count": record.stoppage_count,
            "stoppage_duration_sec": record.stoppage_duration_sec,
            "stoppage_duration_while_on_sec": record.stoppage_duration_while_on_sec,
            "stoppage_duration_while_off_sec": record.stoppage_duration_while_off_sec,
            "average_speed_kph": record.average_speed_kph,
            "efficiency_percent": record.efficiency_percent,
            "timings": record.timings,
            "updated_at": record.updated_at.isoformat() if record.updated_at else None
        })

    return result
