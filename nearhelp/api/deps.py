from starlette.requests import HTTPConnection

from nearhelp.services.runtime import PresenceRuntime


def get_runtime(conn: HTTPConnection) -> PresenceRuntime:
    runtime = getattr(conn.app.state, "runtime", None)
    if runtime is None:
        raise RuntimeError("presence runtime not initialised (lifespan not run?)")
    return runtime
