from prometheus_client import Counter, Histogram, Gauge, generate_latest
from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

router = APIRouter()

# Define metrics
request_count = Counter(
	'http_requests_total',
	'Total HTTP requests',
	['method', 'endpoint', 'status']
)

request_duration = Histogram(
	'http_request_duration_seconds',
	'HTTP request duration',
	['method', 'endpoint'],
	buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

active_requests = Gauge(
	'http_requests_active',
	'Number of active HTTP requests'
)

push_connections = Gauge(
	'push_connections_active',
	'Open task status push connections'
)

push_notifications = Counter(
	'push_notifications_total',
	'Task status notifications fanned out',
	['status']
)

push_deliveries_failed = Counter(
	'push_deliveries_failed_total',
	'Push sends that failed and dropped their connection'
)

task_store_operations = Counter(
	'task_store_operations_total',
	'Task record store operations',
	['operation']
)


@router.get("/metrics", response_class=PlainTextResponse)
async def metrics():
	"""Prometheus metrics endpoint"""
	return generate_latest()
