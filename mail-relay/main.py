"""
Mail Relay Service
==================
Language  : Python
Framework : Flask (+ Gunicorn in production)

Architecture: three layers behind a single POST /mail endpoint.
  config.py     — environment → frozen RelayConfig (fatal if incomplete)
  auth.py       — shared-secret bearer token check
  handler.py    — per-request pipeline: authorize, read, parse, relay
  transport.py  — SMTPS relay client (the only file that speaks SMTP)

Run directly:   python main.py
Under gunicorn: see Procfile (gunicorn 'main:create_app()')
"""

import sys
import logging
from flask import Flask, Response, request, jsonify

import config as relay_config
import handler
import transport

LOG_FORMAT = '%(asctime)s [mail-relay] %(levelname)s %(message)s'

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
log = logging.getLogger(__name__)

# Every method is routed here so anything but POST gets a bare 404
# instead of Flask's 405.
MAIL_ROUTE_METHODS = ['GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS']


def create_app(cfg: relay_config.RelayConfig | None = None,
               client: transport.RelayClient | None = None) -> Flask:
    """
    App factory. With no arguments the config comes from the environment,
    so a missing setting raises ConfigurationError before anything listens.
    """
    if cfg is None:
        cfg = relay_config.load_config()
    if client is None:
        client = transport.RelayClient(cfg)

    logging.getLogger().setLevel(cfg.log_level)

    app = Flask(__name__)
    app.config['RELAY_CONFIG'] = cfg
    app.config['RELAY_CLIENT'] = client
    # Werkzeug refuses longer bodies with RequestEntityTooLarge
    app.config['MAX_CONTENT_LENGTH'] = cfg.max_body_bytes

    @app.route('/health')
    def health():
        return jsonify({
            "status": "healthy",
            "service": "mail-relay",
            "language": "Python",
            "transport": transport.transport_summary(cfg),
        })

    @app.route('/mail', methods=MAIL_ROUTE_METHODS)
    def mail():
        if request.method != 'POST':
            return Response(status=404)

        result, status = handler.process(
            request.headers.get('Authorization'),
            lambda: request.get_json(force=True),
            cfg,
            client,
            remote_addr=request.remote_addr,
        )
        body, status, mimetype = handler.render(result, status)
        return Response(body, status=status, mimetype=mimetype)

    return app


def log_startup(cfg: relay_config.RelayConfig) -> None:
    log.info(f"Mail Relay (Python) starting on {cfg.listen_host}:{cfg.listen_port}")
    log.info(f"  Transport: SMTPS {cfg.smtp_address} (timeout={cfg.smtp_timeout}s)")
    log.info(f"  Auth:      {cfg.smtp_username} (identity={cfg.smtp_identity})")
    log.info(f"  From:      {cfg.sender}")
    log.info(f"  Max body:  {cfg.max_body_bytes} bytes")


def main() -> None:
    try:
        cfg = relay_config.load_config()
    except relay_config.ConfigurationError as e:
        log.critical(f"Failed to initialize: {e}")
        sys.exit(1)

    app = create_app(cfg)
    log_startup(cfg)
    app.run(host=cfg.listen_host, port=cfg.listen_port, threaded=True)


if __name__ == '__main__':
    main()
