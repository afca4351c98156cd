# Provisioning for the disposal service's topics. Message keys are the id of the
# entity the event is about, so one request's or auction's history stays ordered.
TOPICS = {
    "disposal_request_events": {
        "partitions": 3,
        "replication_factor": 3,
        "retention_ms": 31536000000,
        "key": "disposal request id",
    },
    "auction_events": {
        "partitions": 6,
        "replication_factor": 3,
        "retention_ms": 31536000000,
        "key": "auction id",
    },
    # Acceptance order is enforced by the store; partitioning only spreads load.
    "bid_events": {
        "partitions": 12,
        "replication_factor": 3,
        "retention_ms": 31536000000,
        "key": "bid id",
    },
    # Inbound: {"auction_id": ...} published by the external scheduler.
    "auction_close_requests": {
        "partitions": 3,
        "replication_factor": 3,
        "retention_ms": 604800000,
        "key": "auction id",
    },
}
