"""ClamAV Scan Service scans files with a ClamAV daemon session.

Files are streamed to the ClamAV daemon (clamd) with the INSTREAM
command over a session (IDSESSION): several files of one request travel
on the same connection.  clamd can be either reached via Unix domain
socket or TCP socket.  This behaviour can be specified via
configuration.

Configuration: all configuration is managed through environment
variables.  All environment variables starting with "CLAMAV_" prefix
are loaded into the application.

No authentication of any type is implemented whatsoever: be sure that
your ClamAV Scan service is adequately protected.

The following variables are accepted:

 - CLAMAV_CLAMD_SOCKET_PATH : application will connect to clamd
    running on Unix socket at path specified.
 - CLAMAV_CLAMD_HOST : application will connect to clamd running on TCP
    socket at host specified; also CLAMAV_CLAMD_PORT is expected
 - CLAMAV_CLAMD_PORT : use with CLAMAV_CLAMD_HOST
 - CLAMAV_CLAMD_TIMEOUT_MS : socket timeout in milliseconds
 - CLAMAV_SCAN_FAILFAST : stop a batch at the first infected file
    (default true)
 - CLAMAV_REPORT_PARTIAL_RESULTS : when a batch stops early, report
    everything found so far (default true)
 - CLAMAV_INCLUDE_RAW_DATA : include the raw clamd reply in scan
    responses, for debugging

"""
import contextlib
import logging

from flask import Flask, jsonify, request
from flask_swagger import swagger
from werkzeug.exceptions import HTTPException

from .batch import BatchPolicy, BatchStatus, CONNECT_FAIL_MESSAGE
from .clamd import ClamdTCPSession, ClamdUnixSession, ClamdScanStatus, \
    ClamdConnectionError
from .curation import Attachment, ClamScanTask, Item

DEFAULT_TIMEOUT_MS = 300000

##
# Init app and config
##

app = Flask(__name__)

# load all env starting with CLAMAV_ and make them available in
# app.config without CLAMAV_
app.config.from_prefixed_env("CLAMAV")

# fix gunicorn logging
if __name__ != '__main__':
    gunicorn_logger = logging.getLogger('gunicorn.error')
    if gunicorn_logger.handlers:
        app.logger.handlers = gunicorn_logger.handlers[:]
        app.logger.setLevel(gunicorn_logger.level)
        app.logger.propagate = False

##
# API
##


@app.route("/api/v1/doc")
def api_doc():
    """OpenAPI spec of the v1 API.
    """
    swag = swagger(app)
    swag['info']['version'] = "1.0"
    swag['info']['title'] = "ClamAV Scan service"
    swag['info']['description'] = \
        "File scanning over ClamAV daemon sessions"
    return jsonify(swag)


@app.route("/health", methods=["GET"])
@app.route("/api/v1/clamav/ping", methods=["GET"])
def ping():
    """Ping clamav ensuring a session can be opened.
    ---
    tags:
      - status
    responses:
      200:
        description: Pong
        content: application/json
        schema:
          type: object
          properties:
            status:
              type: string
              description: Status of the ping
              example: OK
            message:
              type: string
              description: Message returned by clamav on ping command
              example: PONG
    """
    app.logger.debug("Pinging clamd...")
    with clamd_session() as clamd:
        pong = clamd.ping()
    app.logger.debug("Ping clamd raw response: %s", pong.raw_data)

    if pong.message == "PONG":
        status = "OK"
        code = 200
    else:
        status = "KO"
        code = 503

    return {
        "status": status,
        "message": pong.message,
    }, code


@app.route("/api/v1/clamav/scan", methods=["POST"])
def scan_file():
    """Scan a file attached to the request.
    ---
    tags:
      - scan
    parameters:
      - in: formData
        name: file
        description: File to scan
        required: true
    responses:
      200:
        description: Scanning result
        content: application/json
        schema:
          type: object
          properties:
            status:
              type: string
              description: Scan status {CLEAN,INFECTED,PROTOCOL_ERROR}
              example: INFECTED
            input_file:
              type: string
              description: Input file that was scanned
              example: myfile.txt
            virus:
              type: string
              description: Virus found, if any
              example: Name-Of-Virus-Found
            error:
              type: string
              description: Error occurred, if any
            file_size:
              type: integer
              description: Size of the file scanned in bytes
              example: 256
            details:
              type: array
              description: Additional lines of details, if any
    """
    if 'file' not in request.files:
        return {"error": "No file attached"}, 400
    file_to_analyze = request.files['file']
    filename = file_to_analyze.filename or "stream"
    safe_filename = sanitize(filename)

    app.logger.debug("Starting scan for file \"%s\"", safe_filename)
    with clamd_session() as clamd:
        # we send an open stream to the clamd session
        result = clamd.scan(file_to_analyze.stream, safe_filename)

    # the file pointer is at the end of the stream, so tell() will
    # give us the size in bytes
    file_size = file_to_analyze.stream.tell()
    app.logger.info("Scanned file \"%s\" (%d bytes) with status %s - %s",
                    safe_filename, file_size, result.status.value,
                    result.virus or "no virus")
    app.logger.debug("Scan raw response: %s", result.raw_data)

    # pack the response
    resp_body = {
        "status": result.status.value,
        "input_file": filename,
        "virus": result.virus,
        "details": result.details,
        "error": result.err_msg,
        "file_size": file_size,
    }
    if config_bool("INCLUDE_RAW_DATA"):
        app.logger.warning("Including raw data in scan response. "
                           "Use this option only for debugging")
        resp_body["raw_data"] = result.raw_data

    # decide http status code
    if result.status == ClamdScanStatus.PROTOCOL_ERROR:
        # clamd answered something we are not able to understand
        status_code = 500
        app.logger.error("Unable to parse clamd response. Raw response: %s",
                         result.raw_data)
    else:
        status_code = 200

    return resp_body, status_code


@app.route("/api/v1/clamav/batch", methods=["POST"])
def scan_batch():
    """Scan all the files attached to the request in one clamd session.
    ---
    tags:
      - scan
    parameters:
      - in: formData
        name: file
        description: Files to scan, repeat the field for each file
        required: true
      - in: formData
        name: handle
        description: Identifier of the item the files belong to
        required: false
    responses:
      200:
        description: Batch report
        content: application/json
        schema:
          type: object
          properties:
            status:
              type: string
              description: Outcome of the batch {SUCCESS,FAIL,SKIP,ERROR}
              example: FAIL
            code:
              type: integer
              description: Curation status code of the outcome
              example: 1
            result:
              type: string
              description: Human readable report
            infected:
              type: array
              description: Files where a virus was found
      503:
        description: Unable to use the virus service
    """
    files = request.files.getlist('file')
    item = Item(handle=request.form.get('handle'))
    for seq, file_to_analyze in enumerate(files, start=1):
        item.attachments.append(Attachment(
            name=sanitize(file_to_analyze.filename or f"file{seq}"),
            sequence_id=seq,
            # the request owns the uploaded streams, don't close them
            opener=stream_opener(file_to_analyze.stream),
        ))

    task = ClamScanTask(clamd_session(), batch_policy())
    try:
        task.init()
    except ClamdConnectionError as e:
        app.logger.error("Unable to open clamd session: %s", str(e))
        return {
            "status": BatchStatus.ERROR.name,
            "code": BatchStatus.ERROR.value,
            "result": CONNECT_FAIL_MESSAGE,
            "infected": [],
        }, 503

    try:
        status = task.perform(item)
    finally:
        task.finish()
    app.logger.info("Scanned %d files for item %s with status %s",
                    len(files), item.handle, status.name)

    batch = task.last_batch
    infected = []
    if batch is not None:
        infected = [{"label": r.label, "virus": r.virus}
                    for r in batch.infected]

    return {
        "status": status.name,
        "code": status.value,
        "result": task.result,
        "infected": infected,
    }, 503 if status == BatchStatus.ERROR else 200


##
# Error handlers
##


@app.errorhandler(HTTPException)
def handle_http_exception(e):
    """Handle an HTTP exception and return JSON.
    """
    str_e = str(e)
    if e.code not in [404, 405, 415]:
        # don't pollute logs, these statuses does not concern us
        app.logger.exception("HTTP exception: %s", str_e)
    return {"error": str_e}, e.code


@app.errorhandler(ClamdConnectionError)
def handle_clamd_connection_error(e):
    """Handle a failure talking to clamd and return JSON.
    """
    app.logger.error("clamd connection error: %s", str(e))
    return {"error": CONNECT_FAIL_MESSAGE}, 503


@app.errorhandler(Exception)
def handle_exception(e):
    """Handle an generic exception and return JSON.
    """
    str_e = str(e)
    app.logger.exception("Generic exception: %s", str_e)
    return {"error": str_e}, 500


##
# Helpers
##


def clamd_session():
    """Get a clamd session based on app config.

    The session is not open yet.
    """
    # remember, these are env variables prefixed with CLAMAV_
    host = app.config.get("CLAMD_HOST")
    port = app.config.get("CLAMD_PORT")
    timeout = config_int("CLAMD_TIMEOUT_MS", DEFAULT_TIMEOUT_MS) / 1000

    if host is not None and port is not None:
        return ClamdTCPSession(host=host, port=int(port), timeout=timeout)

    socket_path = app.config.get("CLAMD_SOCKET_PATH") or "/tmp/clamd.sock"
    return ClamdUnixSession(socket_path, timeout=timeout)


def batch_policy() -> BatchPolicy:
    """Get the batch policy based on app config.
    """
    return BatchPolicy(
        fail_fast=config_bool("SCAN_FAILFAST", True),
        report_partial_results=config_bool("REPORT_PARTIAL_RESULTS", True),
    )


def stream_opener(stream):
    """Opener handing out a stream without closing it afterwards.
    """
    return lambda: contextlib.nullcontext(stream)


def sanitize(filename: str) -> str:
    """Strip newlines from a filename to prevent log injection.
    """
    return filename.replace('\r', '').replace('\n', '')


def config_bool(env_name: str, default: bool = False) -> bool:
    """Given a config var name, try to parse as boolean.
    """
    val = app.config.get(env_name)
    if val is None:
        return default
    # from_prefixed_env already turns "true"/"false" into booleans
    if isinstance(val, bool):
        return val
    return str(val).strip().lower() in ["true", "1", "enable", "enabled"]


def config_int(env_name: str, default: int) -> int:
    """Given a config var name, try to parse as integer.
    """
    val = app.config.get(env_name)
    if val is None or val == "":
        return default
    return int(val)


##
# DEV runner
##

if __name__ == "__main__":
    # don't run directly in prod, use a production grade wsgi server
    # like gunicorn
    app.run(host="0.0.0.0", port=8080, debug=True)
