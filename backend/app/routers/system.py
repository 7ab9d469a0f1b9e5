from fastapi import APIRouter, Depends, HTTPException

from ..deps import get_status_reporter, get_synchronizer
from ..status import StatusReporter

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/status")
def sync_status(reporter: StatusReporter = Depends(get_status_reporter)):
    """
    Branch UI indicator: connectivity as seen by the last sync cycle plus the
    number of entries the cloud has not confirmed yet.
    """
    return reporter.status().model_dump(mode="json")


@router.post("/sync-now")
def sync_now(sync=Depends(get_synchronizer)):
    if sync is None:
        raise HTTPException(status_code=409, detail="sync is not running in this process")
    result = sync.sync_now()
    if result is None:
        raise HTTPException(status_code=409, detail="a sync cycle is already running")
    return {"result": result.model_dump(mode="json"), "state": sync.state}
