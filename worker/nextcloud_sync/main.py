import os

from nextcloud_sync.api import create_app
from nextcloud_sync.scheduler import start_scheduler_thread
from nextcloud_sync.wiring import is_enabled

app = create_app()
_bootstrapped = False


def bootstrap_background_threads():
    global _bootstrapped
    if _bootstrapped:
        return
    if not is_enabled(os.getenv("WORKER_ENABLE_BACKGROUND_THREADS"), default=True):
        _bootstrapped = True
        return
    start_scheduler_thread()
    _bootstrapped = True


bootstrap_background_threads()

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000)
