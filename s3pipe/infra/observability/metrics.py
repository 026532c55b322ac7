from prometheus_client import REGISTRY, Counter, Histogram, write_to_textfile

# 低基数标签：只使用操作名与结果，不把 bucket/key 放进标签
TRANSFER_OPERATIONS = Counter(
    "s3pipe_transfer_operations_total",
    "Total object transfer operations",
    ["operation", "outcome"],
)

TRANSFER_BYTES = Counter(
    "s3pipe_transfer_bytes_total",
    "Bytes moved through object transfers",
    ["direction"],
)

TRANSFER_DURATION = Histogram(
    "s3pipe_transfer_duration_seconds",
    "Object transfer latency in seconds",
    ["operation"],
)


def export_textfile(path: str) -> None:
    """Dump the default registry in node-exporter textfile format."""
    write_to_textfile(path, REGISTRY)
