import mimetypes

from flask import Blueprint, abort, current_app, send_file

from app.portcall.storage import LocalStorage, StorageError, storage_from_config

bp = Blueprint("files", __name__)


@bp.get("/files/<path:key>")
def serve_file(key: str):
    """
    Serves locally stored blobs by key. Keys carry a random component, so the
    URL itself is the capability; S3-backed deployments never route here.
    """
    storage = storage_from_config(current_app.config)
    if not isinstance(storage, LocalStorage):
        abort(404)
    try:
        fobj = storage.open(key)
    except StorageError:
        abort(404)
    mimetype = mimetypes.guess_type(key)[0] or "application/octet-stream"
    return send_file(fobj, mimetype=mimetype, as_attachment=False, download_name=key.rsplit("/", 1)[-1], max_age=0)
