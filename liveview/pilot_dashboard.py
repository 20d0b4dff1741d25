import logging

from flask import Flask, jsonify, request

from liveview.pilot_config import configure_logging, load_editable_config, load_runtime_config, save_config
from liveview.pilot_gateway import HttpFetchGateway
from liveview.pilot_runtime import LiveRuntime
from liveview.pilot_session import LiveViewSession


log = logging.getLogger("pilot.dashboard")


def _json_body():
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        return payload
    return {}


def _error(status_code, message):
    response = jsonify({"ok": False, "error": message})
    response.status_code = status_code
    return response


def create_app(runtime, session, config, config_path=None):
    app = Flask(__name__)

    def run(fn, *args):
        return runtime.call(fn, *args)

    @app.errorhandler(ValueError)
    def handle_value_error(exc):
        return _error(400, str(exc))

    @app.route("/status", methods=["GET"])
    def status():
        live = run(session.live_snapshot)
        command = run(session.command_snapshot)
        return jsonify(
            {
                "runtime": runtime.running,
                "target_id": live["target_id"],
                "live_state": live["state"],
                "live_error": live["error"],
                "last_update": live["last_update"],
                "result_count": live["result_count"],
                "command_state": command["state"],
                "control_plane_url": config.get("control_plane_url"),
            }
        )

    @app.route("/api/config", methods=["GET"])
    def config_get():
        return jsonify(load_editable_config(config_path))

    @app.route("/api/config", methods=["PUT"])
    def config_put():
        merged = load_editable_config(config_path)
        merged.update(_json_body())
        try:
            saved = save_config(merged, config_path)
        except OSError as exc:
            log.warning("Could not save configuration: %s", exc)
            return _error(500, str(exc))
        # Saved values apply on the next start; the running session keeps its config.
        return jsonify({"ok": True, "config": saved, "restart_required": True})

    @app.route("/api/live", methods=["GET"])
    def live_snapshot():
        return jsonify(run(session.live_snapshot))

    @app.route("/api/live/target", methods=["POST"])
    def live_target():
        target_id = str(_json_body().get("target_id") or "").strip()
        if not target_id:
            return _error(400, "target_id is required")
        return jsonify(run(session.select_target, target_id))

    @app.route("/api/live/start", methods=["POST"])
    def live_start():
        changed = run(session.poller.start)
        return jsonify({"ok": True, "changed": changed, "state": session.poller.state})

    @app.route("/api/live/pause", methods=["POST"])
    def live_pause():
        changed = run(session.poller.pause)
        return jsonify({"ok": True, "changed": changed, "state": session.poller.state})

    @app.route("/api/live/resume", methods=["POST"])
    def live_resume():
        changed = run(session.poller.resume)
        return jsonify({"ok": True, "changed": changed, "state": session.poller.state})

    @app.route("/api/live/stop", methods=["POST"])
    def live_stop():
        run(session.poller.stop)
        return jsonify({"ok": True, "state": session.poller.state})

    @app.route("/api/live/visibility/toggle", methods=["POST"])
    def visibility_toggle():
        agent_id = str(_json_body().get("agent_id") or "").strip()
        if not agent_id:
            return _error(400, "agent_id is required")
        return jsonify({"visibility": run(session.poller.toggle_agent, agent_id)})

    @app.route("/api/live/visibility/reset", methods=["POST"])
    def visibility_reset():
        run(session.poller.show_all_agents)
        return jsonify({"visibility": []})

    @app.route("/api/mtr", methods=["POST"])
    def mtr_dispatch():
        agent_ids = _json_body().get("agent_ids") or []
        if not isinstance(agent_ids, list):
            return _error(400, "agent_ids must be a list")
        envelope = run(session.trigger_mtr, agent_ids)
        status_code = 502 if envelope["status"] == "error" else 202
        response = jsonify(envelope)
        response.status_code = status_code
        return response

    @app.route("/api/mtr", methods=["GET"])
    def mtr_status():
        return jsonify(run(session.command_snapshot))

    @app.route("/api/mtr", methods=["DELETE"])
    def mtr_clear():
        run(session.dispatcher.clear)
        return jsonify(run(session.command_snapshot))

    return app


def main():
    config = load_runtime_config()
    configure_logging(config)

    runtime = LiveRuntime()
    runtime.start()
    gateway = HttpFetchGateway.from_config(config)
    session = LiveViewSession(gateway, config)
    runtime.call(session.refresh_agents)

    app = create_app(runtime, session, config)
    log.info(
        "Live view control surface at http://%s:%s/status",
        config["dashboard_host"],
        config["dashboard_port"],
    )
    try:
        app.run(host=config["dashboard_host"], port=config["dashboard_port"], threaded=True)
    finally:
        runtime.stop(shutdown=session.aclose)
