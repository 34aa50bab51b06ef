from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
RUNS_DISPATCHED = Counter('cronqueue_runs_dispatched_total', 'Runs inserted by dispatch()', ['job'])
RUNS_ENQUEUED = Counter('cronqueue_runs_enqueued_total', 'Cron occurrences inserted by enqueue() (duplicates excluded)', ['job'])
RUNS_CLAIMED = Counter('cronqueue_runs_claimed_total', 'Runs leased by this process', ['job'])
RUNS_DEFERRED = Counter('cronqueue_runs_deferred_total', 'Due runs left for a later tick', ['job', 'reason'])  # reason=concurrency|conflict
RUN_OUTCOMES = Counter('cronqueue_run_outcomes_total', 'Finished run attempts', ['job', 'outcome'])  # outcome=succeeded|retried|exhausted|skipped
RUNS_PRUNED = Counter('cronqueue_runs_pruned_total', 'Abandoned runs deleted by prune()')

CLAIM_DELAY = Histogram('cronqueue_claim_delay_seconds', 'Time from run_at to claim', buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0])
RUN_DURATION = Histogram('cronqueue_run_duration_seconds', 'Handler wall time including hooks', ['job'], buckets=[0.1, 1.0, 5.0, 10.0, 60.0, 120.0])

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
