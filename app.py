"""
Flask Web Application for the AERS Reporting Agent

JSON API over SessionController. Each browser gets its own session
(identified by a signed cookie) with its own pending-action slot, so a
report started before identity verification survives a server restart.
"""

import asyncio
import io
import json
import logging
import os
import threading
import time
import uuid
from collections import OrderedDict

from flask import Flask, jsonify, request, send_file, session

from aers.core.identity import InMemoryIdentityProvider, identity_from_json
from aers.core.report_agent import ReportAgent
from aers.core.report_formatter import ReportFormatter
from aers.core.session_controller import SessionController
from aers.persistence import PendingActionStore
from aers.results import IllegalCommand
from aers.settings import settings
from aers.utils.hf_client import HuggingFaceClient
from aers.utils.term_lookup import TermLookupClient

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config['SECRET_KEY'] = settings.SECRET_KEY or 'aers-dev-secret-key'

# Configured once at startup (see configure / initialize_models)
runtime = {
    'collaborator': None,
    'pending_dir': settings.PENDING_DIR,
    'output_dir': settings.OUTPUT_DIR,
    'max_sessions': settings.MAX_SESSIONS,
    'session_idle_seconds': settings.SESSION_IDLE_SECONDS,
}

# client_id -> SessionController, least recently used first
sessions = OrderedDict()
last_seen = {}
_sessions_lock = threading.Lock()


def initialize_models():
    """Load the model and build the Report Agent (called once at startup)"""
    if runtime['collaborator'] is None:
        logger.info("Initializing HuggingFace model (this can take a while)...")
        hf_client = HuggingFaceClient(
            model_name=settings.MODEL_NAME,
            load_in_4bit=settings.LOAD_IN_4BIT,
            device=settings.DEVICE
        )
        runtime['collaborator'] = ReportAgent(
            llm_client=hf_client,
            term_lookup=TermLookupClient(settings.TERM_LOOKUP_URL),
            max_new_tokens=settings.MAX_NEW_TOKENS
        )
        logger.info("Report Agent ready")


def configure(collaborator, pending_dir=None, output_dir=None,
              max_sessions=None, session_idle_seconds=None):
    """Inject the generation collaborator, storage locations and session limits"""
    runtime['collaborator'] = collaborator
    if pending_dir is not None:
        runtime['pending_dir'] = pending_dir
    if output_dir is not None:
        runtime['output_dir'] = output_dir
    runtime['max_sessions'] = max_sessions or settings.MAX_SESSIONS
    runtime['session_idle_seconds'] = session_idle_seconds or settings.SESSION_IDLE_SECONDS
    with _sessions_lock:
        for controller in sessions.values():
            controller.close()
        sessions.clear()
        last_seen.clear()


def evict_sessions(now):
    """
    Drop idle controllers, then the least recently used beyond the cap.

    A dropped client keeps its pending action on disk; its next request
    builds a fresh controller that resumes it. Caller holds _sessions_lock.
    """
    for client_id in list(sessions):
        idle = now - last_seen[client_id] > runtime['session_idle_seconds']
        if not idle and len(sessions) <= runtime['max_sessions']:
            break
        controller = sessions.pop(client_id)
        del last_seen[client_id]
        controller.close()
        logger.info(f"Evicted {'idle' if idle else 'oldest'} session {client_id[:8]}")


def get_controller():
    """
    Controller for the calling client, created on first use.

    A new controller runs page-load recovery so a pending action stored
    before a restart (or an eviction) is picked up.
    """
    client_id = session.get('client_id')
    if not client_id:
        client_id = uuid.uuid4().hex
        session['client_id'] = client_id

    with _sessions_lock:
        now = time.monotonic()
        controller = sessions.get(client_id)
        created = controller is None
        if created:
            if runtime['collaborator'] is None:
                raise RuntimeError("Generation collaborator is not configured")
            controller = SessionController(
                collaborator=runtime['collaborator'],
                identity_provider=InMemoryIdentityProvider(),
                pending_store=PendingActionStore(os.path.join(runtime['pending_dir'], client_id)),
                report_formatter=ReportFormatter(),
                output_dir=runtime['output_dir']
            )
            sessions[client_id] = controller
            logger.info(f"New session for client {client_id[:8]}")
        else:
            sessions.move_to_end(client_id)
        last_seen[client_id] = now
        evict_sessions(now)

    if created:
        asyncio.run(controller.resume())
    return controller


def attachments_from(data):
    """
    Client attachments: a list of {name, type, data} objects.

    Returns:
        The list, or None if it has any other shape
    """
    attachments = data.get('attachments') or []
    if not isinstance(attachments, list):
        return None
    if not all(isinstance(item, dict) for item in attachments):
        return None
    return attachments


def bad_attachments():
    return jsonify({
        'success': False,
        'error': "attachments must be a list of {name, type, data} objects"
    }), 400


def respond(controller, result):
    """Serialize a controller result"""
    if isinstance(result, IllegalCommand):
        return jsonify({
            'success': False,
            'error': result.reason,
            'command': result.command_type,
            'session': controller.session_view()
        }), 409

    return jsonify({
        'success': result.error is None,
        'message': result.system_output,
        'error': result.error,
        'session': controller.session_view()
    })


def server_error(context, e):
    logger.error(f"Error {context}: {e}")
    return jsonify({
        'success': False,
        'error': str(e)
    }), 500


@app.route('/api/session', methods=['GET'])
def get_session():
    """Current session view"""
    try:
        controller = get_controller()
        return jsonify({'success': True, 'session': controller.session_view()})
    except Exception as e:
        return server_error("reading session", e)


@app.route('/api/session/start', methods=['POST'])
def start_report():
    """Start a report from the landing screen"""
    try:
        data = request.get_json(silent=True) or {}
        attachments = attachments_from(data)
        if attachments is None:
            return bad_attachments()
        controller = get_controller()
        result = asyncio.run(controller.start_report(data.get('description', ''), attachments))
        return respond(controller, result)
    except Exception as e:
        return server_error("starting report", e)


@app.route('/api/session/message', methods=['POST'])
def send_message():
    """Send a free-text message"""
    try:
        data = request.get_json(silent=True) or {}
        attachments = attachments_from(data)
        if attachments is None:
            return bad_attachments()
        controller = get_controller()
        result = asyncio.run(controller.send_message(data.get('message', ''), attachments))
        return respond(controller, result)
    except Exception as e:
        return server_error("processing message", e)


@app.route('/api/session/suggestion', methods=['POST'])
def confirm_suggestion():
    """Pick one of the suggested terms"""
    try:
        data = request.get_json(silent=True) or {}
        controller = get_controller()
        result = asyncio.run(controller.confirm_suggestion(data.get('term', '')))
        return respond(controller, result)
    except Exception as e:
        return server_error("confirming suggestion", e)


@app.route('/api/session/suggestion/dismiss', methods=['POST'])
def dismiss_suggestions():
    try:
        controller = get_controller()
        return respond(controller, controller.dismiss_suggestions())
    except Exception as e:
        return server_error("dismissing suggestions", e)


@app.route('/api/session/sections/<section>', methods=['PUT'])
def edit_section(section):
    """Replace one report section with the form's values"""
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or 'value' not in data:
            return jsonify({
                'success': False,
                'error': "Body must be an object with a 'value' key"
            }), 400
        controller = get_controller()
        return respond(controller, controller.edit_section(section, data['value']))
    except Exception as e:
        return server_error("editing section", e)


@app.route('/api/session/reset', methods=['POST'])
def reset_session():
    try:
        controller = get_controller()
        return respond(controller, controller.reset())
    except Exception as e:
        return server_error("resetting session", e)


@app.route('/api/identity/sign-in', methods=['POST'])
def sign_in():
    """Identity verification finished with a verified identity"""
    try:
        data = request.get_json(silent=True) or {}
        try:
            identity = identity_from_json(data)
        except ValueError as e:
            return jsonify({'success': False, 'error': str(e)}), 400

        controller = get_controller()
        controller.identity_provider.sign_in(identity)
        result = asyncio.run(controller.handle_identity_change(identity))
        return respond(controller, result)
    except Exception as e:
        return server_error("signing in", e)


@app.route('/api/identity/sign-out', methods=['POST'])
def sign_out():
    try:
        controller = get_controller()
        controller.identity_provider.sign_out()
        return jsonify({'success': True, 'session': controller.session_view()})
    except Exception as e:
        return server_error("signing out", e)


@app.route('/api/identity/request', methods=['POST'])
def request_sign_in():
    """Show the identity gate without starting a report"""
    try:
        controller = get_controller()
        return respond(controller, controller.request_sign_in())
    except Exception as e:
        return server_error("requesting sign-in", e)


@app.route('/api/identity/back', methods=['POST'])
def back_to_home():
    try:
        controller = get_controller()
        return respond(controller, controller.back_to_home())
    except Exception as e:
        return server_error("leaving identity gate", e)


@app.route('/api/report/download', methods=['GET'])
def download_report():
    """Download the finished report as JSON"""
    try:
        controller = get_controller()
        result = controller.export()
        if isinstance(result, IllegalCommand):
            return respond(controller, result)

        payload = json.dumps(result.document, indent=2, ensure_ascii=False).encode('utf-8')
        return send_file(
            io.BytesIO(payload),
            mimetype='application/json',
            as_attachment=True,
            download_name=result.filename
        )
    except Exception as e:
        return server_error("downloading report", e)


if __name__ == '__main__':
    settings.validate()
    initialize_models()

    os.makedirs(settings.OUTPUT_DIR, exist_ok=True)
    os.makedirs(settings.PENDING_DIR, exist_ok=True)

    print("\n" + "="*60)
    print("AERS REPORTING AGENT - WEB API")
    print("="*60)
    print("\nServer starting on http://localhost:5000")
    print("\nPress Ctrl+C to stop the server")
    print("="*60 + "\n")

    app.run(debug=False, host='0.0.0.0', port=5000)
