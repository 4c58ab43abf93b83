"""Lifeboat — Entry Point.

Local recovery console: diagnoses port conflicts, downed services and
database outages, and walks the recovery steps.  Binds to 127.0.0.1
only; if the configured port is taken the next free one is used.

Run:
    python app.py
"""

import logging

import config
from lifeboat import create_app
from lifeboat.services.port_prober import find_free_port

log = logging.getLogger("lifeboat.app")

application = create_app()

if __name__ == "__main__":
    port = find_free_port(config.PORT)
    if port != config.PORT:
        log.warning("Port %d is in use, using %d instead.", config.PORT, port)
    log.info("Recovery console listening on %s:%d", config.HOST, port)
    application.run(
        host=config.HOST,
        port=port,
        debug=False,
        threaded=True,
    )
