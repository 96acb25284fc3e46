"""Disposable MongoDB containers for tests.

```python
from mongotest import mongo_container

with mongo_container() as conn:
    conn.mongo_client.admin.command("ping")
```
"""

from mongotest.core.exceptions import (
    ContainerCreateError,
    ContainerRemoveError,
    ContainerStartError,
    DaemonUnreachableError,
    ImagePullError,
    MongoTestError,
    NoPortAvailableError,
    ReadinessTimeoutError,
    ReplicaSetInitError,
    ScriptExecError,
)
from mongotest.core.lifecycle import (
    ConnectionLifecycleManager,
    mongo_container,
    new_replica_set_container,
    new_test_connection,
    new_tls_container,
    provision,
    run_with_client,
    run_with_container,
)
from mongotest.core.models import InstanceState, TestConnection

__version__ = "0.1.0"

__all__ = [
    "ConnectionLifecycleManager",
    "ContainerCreateError",
    "ContainerRemoveError",
    "ContainerStartError",
    "DaemonUnreachableError",
    "ImagePullError",
    "InstanceState",
    "MongoTestError",
    "NoPortAvailableError",
    "ReadinessTimeoutError",
    "ReplicaSetInitError",
    "ScriptExecError",
    "TestConnection",
    "__version__",
    "mongo_container",
    "new_replica_set_container",
    "new_test_connection",
    "new_tls_container",
    "provision",
    "run_with_client",
    "run_with_container",
]
