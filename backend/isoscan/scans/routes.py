# =============================================================================
# File: isoscan/scans/routes.py
# Description: Scan routes: trigger, status and cancel for scan jobs,
#   plus the read-only scanner catalogue.
#
#   POST /scans                     trigger (202, or 4xx/503 error body)
#   GET  /scans/<scan_id>           aggregated outcome
#   POST /scans/<scan_id>/cancel    stop and clean up (202)
#   GET  /scanners                  registered scanners and profiles
#
# Domain errors propagate to the ScanEngineError handler in create_app,
# which renders {"error", "code", "message"} with the right status.
# =============================================================================

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request

from isoscan.errors import InvalidSubmission

logger = logging.getLogger(__name__)

scans_bp = Blueprint("scans", __name__, url_prefix="/scans")
scanners_bp = Blueprint("scanners", __name__, url_prefix="/scanners")


def _engine():
    return current_app.extensions["isoscan"]


def _first(body: dict, *keys):
    for k in keys:
        if k in body:
            return body[k]
    return None


# ---------------------------------------------------------------------------
# Scans
# ---------------------------------------------------------------------------

@scans_bp.post("")
def trigger_scan():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise InvalidSubmission("Request body must be a JSON object")

    scan_id = _first(body, "scanId", "scan_id")
    scanner_id = _first(body, "scannerId", "scanner_id")
    if not scan_id or not scanner_id:
        raise InvalidSubmission("scanId and scannerId are required")
    if not isinstance(scan_id, str) or not isinstance(scanner_id, str):
        raise InvalidSubmission("scanId and scannerId must be strings")

    result = _engine().orchestrator.trigger_scan(
        scan_id=scan_id,
        scanner_id=scanner_id,
        source_code=_first(body, "sourceCode", "source_code"),
        files=body.get("files"),
        tenant=body.get("tenant"),
    )
    return jsonify(result.to_dict()), 202


@scans_bp.get("/<scan_id>")
def get_scan(scan_id: str):
    outcome = _engine().orchestrator.get_status(scan_id)
    return jsonify(outcome.to_dict()), 200


@scans_bp.post("/<scan_id>/cancel")
def cancel_scan(scan_id: str):
    acknowledged = _engine().orchestrator.cancel(scan_id)
    return jsonify(acknowledged=acknowledged, scanId=scan_id), 202


# ---------------------------------------------------------------------------
# Scanner catalogue
# ---------------------------------------------------------------------------

@scanners_bp.get("")
def list_scanners():
    registry = _engine().registry
    return jsonify(scanners=[
        {
            "id": d.scanner_id,
            "image": d.image,
            "timeoutSeconds": d.timeout_seconds,
            "resources": d.resources.as_resources(),
        }
        for d in registry.descriptors()
    ]), 200
