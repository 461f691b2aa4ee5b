from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

# Keep metrics module-level singletons
jobs_submitted_total = Counter("jobs_submitted_total", "Total task descriptors submitted")
jobs_enqueued_total = Counter("jobs_enqueued_total", "Jobs handed to the queue server")
error_count = Counter("error_count", "Total errors encountered by the control plane")
enqueue_latency_seconds = Histogram("enqueue_latency_seconds", "Time to enqueue a job")
request_latency_seconds = Histogram("request_latency_seconds", "HTTP request latency seconds")

# Worker / execution metrics
jobs_executed_total = Counter("jobs_executed_total", "Jobs dispatched by workers", ["disposition"])
execution_latency_seconds = Histogram("execution_latency_seconds", "Job execution latency seconds")
lease_latency_seconds = Histogram("lease_latency_seconds", "Time spent waiting for a lease")
lease_errors_total = Counter("lease_errors_total", "Failed lease attempts", ["kind"])
affinity_hits_total = Counter("affinity_hits_total", "Leases served by the remembered fast connection")


def metrics_response():
    # Return prometheus metrics as a Response
    payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
