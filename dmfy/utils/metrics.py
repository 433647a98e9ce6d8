# /dmfy/utils/metrics.py

from prometheus_client import Counter, Histogram

# This file defines all Prometheus metrics used for application monitoring.
# Centralizing them here makes them easy to find and manage.

# Conversation Metrics
message_counter = Counter('dmfy_messages_total', 'Inbound messages processed by the flow engine', ['channel', 'outcome'])
session_reset_counter = Counter('dmfy_session_resets_total', 'Sessions moved back to the entry node', ['reason'])
flow_publish_counter = Counter('dmfy_flow_publish_total', 'Flow publish attempts', ['status'])

# Delivery Metrics
outbound_message_counter = Counter('dmfy_outbound_messages_total', 'Outbound message sends', ['status'])

# Performance Metrics
response_time_histogram = Histogram('dmfy_response_time_seconds', 'Response time in seconds', ['endpoint'])
