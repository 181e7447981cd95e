#!/usr/bin/env python3

import importlib
import importlib.util
import json
import logging
import os
import threading
from collections.abc import Mapping
from pathlib import Path

from flask import Flask, jsonify, request, abort
from flask_caching import Cache
from pymongo import MongoClient

from catalog_store import MongoCatalog
from chart_scanner import ChartScanner, ScanInProgressError


def _load_config_module():
    """Load configuration module from several possible locations."""

    module_name = os.environ.get("CHART_CATALOG_CONFIG_MODULE")
    search_order = []
    if module_name:
        search_order.append(module_name)
    search_order.extend(["config.config", "config"])

    for name in search_order:
        try:
            return importlib.import_module(name)
        except ModuleNotFoundError:
            continue

    path_candidates = [
        Path(os.environ.get("CHART_CATALOG_CONFIG_PATH", "config.py")),
        Path("config/config.py"),
    ]
    for config_path in path_candidates:
        if not config_path.exists():
            continue
        spec = importlib.util.spec_from_file_location("config", config_path)
        if spec and spec.loader:
            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)  # type: ignore[attr-defined]
            return module

    raise FileNotFoundError('No such file or directory: \'config.py\'. Copy the example config file config.example.py to config.py')


def take_config(config, name, required=False):
    if isinstance(config, Mapping):
        if name in config:
            return config[name]
    elif hasattr(config, name):
        return getattr(config, name)
    if required:
        raise ValueError('Required option is not defined in the config.py file: {}'.format(name))
    return None


def _coerce_bool(value, default):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if not text:
        return default
    return text not in {'0', 'false', 'no', 'off'}


def _library_paths(config):
    env_value = os.environ.get('LIBRARY_PATHS')
    if env_value:
        return [part for part in env_value.split(os.pathsep) if part.strip()]
    value = take_config(config, 'LIBRARY_PATHS') or []
    if isinstance(value, str):
        return [value]
    return [str(part) for part in value]


def _connect_db(config):
    mongo_config = take_config(config, 'MONGO') or {}
    mongo_uri = os.environ.get("CHART_CATALOG_MONGO_URI") or mongo_config.get('uri')
    mongo_host = os.environ.get("CHART_CATALOG_MONGO_HOST") or mongo_config.get('host')

    if mongo_uri:
        client = MongoClient(mongo_uri)
    else:
        if not mongo_host:
            mongo_host = ['127.0.0.1:27017']
        client = MongoClient(host=mongo_host)

    db_name = os.environ.get("CHART_CATALOG_MONGO_DB") or mongo_config.get('database') or 'chart_catalog'
    return client[db_name]


def api_error(message):
    return jsonify({'status': 'error', 'message': message})


def create_app(settings=None, db=None):
    config = settings if settings is not None else _load_config_module()

    app = Flask(__name__)
    cache_type = os.environ.get('CACHE_TYPE') or take_config(config, 'CACHE_TYPE') or 'SimpleCache'
    cache = Cache(app, config={'CACHE_TYPE': cache_type, 'CACHE_DEFAULT_TIMEOUT': 60})

    if db is None:
        db = _connect_db(config)
    catalog = MongoCatalog(db)
    scanner = ChartScanner(catalog)

    library_paths = _library_paths(config)
    admin_scan_token = os.environ.get('ADMIN_SCAN_TOKEN') or take_config(config, 'ADMIN_SCAN_TOKEN') or 'change-me'
    scan_on_start = _coerce_bool(os.environ.get('SCAN_ON_START'), _coerce_bool(take_config(config, 'SCAN_ON_START'), False))

    state = {'thread': None, 'last_result': None, 'last_error': None}
    start_lock = threading.Lock()
    app.extensions['chart_catalog'] = {
        'catalog': catalog,
        'scanner': scanner,
        'state': state,
        'library_paths': library_paths,
    }

    @cache.memoize()
    def chart_document(chart_id):
        record = catalog.get_chart(chart_id)
        if record is None:
            return None
        return record.to_dict()

    def invalidate_chart_cache():
        try:
            cache.delete_memoized(chart_document)
        except Exception:
            app.logger.debug('Failed to invalidate chart cache')

    def run_scan(paths):
        try:
            result = scanner.scan_library_paths(paths)
        except ScanInProgressError:
            app.logger.warning('Library scan requested while another scan was running')
            return
        except Exception as exc:
            app.logger.exception('Library scan failed')
            state['last_error'] = str(exc) or exc.__class__.__name__
            return
        finally:
            invalidate_chart_cache()
        state['last_result'] = result.to_dict()
        state['last_error'] = None
        app.logger.info("Library scan finished: %s", state['last_result'])

    def start_scan(paths):
        """Start a background scan; returns None when one is already running."""

        with start_lock:
            thread = state['thread']
            if scanner.is_scanning or (thread is not None and thread.is_alive()):
                return None
            thread = threading.Thread(target=run_scan, args=(paths,), name='chart-catalog-scan', daemon=True)
            state['thread'] = thread
            thread.start()
            return thread

    def get_scan_token():
        header_token = request.headers.get('X-Scan-Token')
        if header_token:
            return header_token.strip()
        auth_header = request.headers.get('Authorization', '')
        if auth_header.lower().startswith('bearer '):
            return auth_header[7:].strip()
        request_json = request.get_json(silent=True) or {}
        if isinstance(request_json, dict) and request_json.get('token'):
            return str(request_json['token'])
        return request.args.get('token')

    def require_token():
        if admin_scan_token and get_scan_token() != admin_scan_token:
            app.logger.warning('Unauthorized catalog request to %s', request.path)
            abort(403)

    @app.route('/healthz')
    def route_healthcheck():
        status = {'status': 'ok'}
        try:
            db.command('ping')
            status['mongo'] = 'ok'
        except Exception:
            status['status'] = 'error'
            status['mongo'] = 'error'
            return jsonify(status), 503
        return jsonify(status)

    @app.route('/api/catalog/scan', methods=['POST'])
    def route_catalog_scan():
        require_token()
        payload = request.get_json(silent=True) or {}
        paths = payload.get('paths') if isinstance(payload, dict) else None
        if paths is None:
            paths = library_paths
        if not isinstance(paths, list) or not all(isinstance(path, str) for path in paths):
            return api_error('invalid_paths'), 400
        if not paths:
            return api_error('no_library_paths'), 400
        if start_scan(paths) is None:
            return api_error('scan_in_progress'), 409
        return jsonify({'status': 'ok', 'paths': paths}), 202

    @app.route('/api/catalog/scan/cancel', methods=['POST'])
    def route_catalog_scan_cancel():
        require_token()
        return jsonify({'status': 'ok', 'cancelled': scanner.cancel_scan()})

    @app.route('/api/catalog/scan/status')
    def route_catalog_scan_status():
        return jsonify({
            'status': 'ok',
            'scanning': scanner.is_scanning,
            'progress': scanner.status.to_dict(),
            'last_result': state['last_result'],
            'last_error': state['last_error'],
        })

    @app.route('/api/catalog/rescan', methods=['POST'])
    def route_catalog_rescan():
        require_token()
        payload = request.get_json(silent=True) or {}
        path = payload.get('path') if isinstance(payload, dict) else None
        if not isinstance(path, str) or not path:
            return api_error('invalid_path'), 400
        try:
            record = scanner.rescan_chart(path)
        except Exception as exc:
            app.logger.exception('Rescan of %s failed', path)
            return api_error(str(exc)), 422
        finally:
            invalidate_chart_cache()
        return jsonify({'status': 'ok', 'chart': record.to_dict() if record else None})

    @app.route('/api/catalog/charts/<int:chart_id>')
    def route_catalog_chart(chart_id):
        document = chart_document(chart_id)
        if document is None:
            return api_error('chart_not_found'), 404
        return jsonify({'status': 'ok', 'chart': document})

    if scan_on_start and library_paths:
        start_scan(library_paths)

    return app


if __name__ == '__main__':
    import argparse

    parser = argparse.ArgumentParser(description='Run the chart catalog server.')
    parser.add_argument('port', type=int, metavar='PORT', nargs='?', default=34802, help='Port to listen on.')
    parser.add_argument('-b', '--bind-address', default='localhost', help='Bind server to address.')
    parser.add_argument('-d', '--debug', action='store_true', help='Enable debug mode.')
    parser.add_argument('--scan', action='store_true', help='Scan the configured library paths once and exit.')
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO)
    app = create_app()

    if args.scan:
        extension = app.extensions['chart_catalog']
        result = extension['scanner'].scan_library_paths(extension['library_paths'])
        print(json.dumps(result.to_dict(), indent=2))
    else:
        app.run(host=args.bind_address, port=args.port, debug=args.debug)
