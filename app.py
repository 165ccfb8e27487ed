#!/usr/bin/env python3
"""Read-only HTTP API over the song catalog."""

import hmac
import os
from pathlib import Path

from flask import Flask, abort, jsonify, request
from pymongo import MongoClient
from pymongo.errors import PyMongoError

import settings
from catalog import DEFAULT_COLLECTION, DEFAULT_DATABASE, CatalogStore
from media_probe import FFprobeDurationProbe
from songs_scanner import SongScanner


MAX_PAGE_SIZE = 1000
DEFAULT_PAGE_SIZE = 100


def _resolve_baseurl(value):
    if not value:
        return '/songs/'
    return value if value.endswith('/') else value + '/'


def _decode_path(value):
    if value is None:
        return None
    return os.fsdecode(bytes(value))


def _int_arg(name, default, *, minimum=0, maximum=None):
    raw = request.args.get(name)
    if raw is None or raw == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        abort(400)
    if value < minimum:
        abort(400)
    if maximum is not None:
        value = min(value, maximum)
    return value


def serialize_song(song, songs_baseurl):
    audio_path = _decode_path(song.get('audio_path'))
    cover_path = _decode_path(song.get('cover_path'))
    return {
        'path': _decode_path(song.get('path')),
        'title': song.get('title'),
        'artist': song.get('artist'),
        'language': song.get('language'),
        'year': song.get('year'),
        'duration': song.get('duration'),
        'lyrics': song.get('lyrics'),
        'player_count': song.get('player_count'),
        'audio_path': audio_path,
        'cover_path': cover_path,
        'audio_url': songs_baseurl + audio_path.lstrip('/') if audio_path else None,
        'cover_url': songs_baseurl + cover_path.lstrip('/') if cover_path else None,
    }


def create_app(store=None, scanner=None, config=None):
    if config is None:
        config = settings.load_config_module()

    app = Flask(__name__)

    if store is None:
        client = MongoClient(settings.mongo_uri(config))
        database_name = settings.mongo_database(config)
        db = client[database_name] if database_name else client.get_default_database(default=DEFAULT_DATABASE)
        store = CatalogStore(db, settings.mongo_collection(config) or DEFAULT_COLLECTION)

    songs_dir = os.environ.get('SONGS_DIR') or settings.take_config(config, 'SONGS_DIR')
    if scanner is None and songs_dir:
        scanner = SongScanner(
            store,
            Path(songs_dir).expanduser(),
            settings.strip_components(config),
            probe=FFprobeDurationProbe(settings.ffprobe_executable(config)),
        )

    songs_baseurl = _resolve_baseurl(os.environ.get('SONGS_BASEURL') or settings.take_config(config, 'SONGS_BASEURL'))
    admin_scan_token = os.environ.get('ADMIN_SCAN_TOKEN') or settings.take_config(config, 'ADMIN_SCAN_TOKEN')

    app.config['CATALOG_STORE'] = store
    app.config['SONG_SCANNER'] = scanner

    @app.route('/healthz')
    def route_healthcheck():
        try:
            store.ping()
        except PyMongoError:
            app.logger.exception('Catalog health check failed')
            return jsonify({'status': 'error', 'mongo': 'error'}), 503
        return jsonify({'status': 'ok', 'mongo': 'ok'})

    @app.route('/api/songs')
    def route_api_songs():
        players = _int_arg('players', None, minimum=1)
        songs = store.search(
            query=request.args.get('q', '').strip() or None,
            artist=request.args.get('artist', '').strip() or None,
            language=request.args.get('language', '').strip() or None,
            player_count=players,
            limit=_int_arg('limit', DEFAULT_PAGE_SIZE, minimum=1, maximum=MAX_PAGE_SIZE),
            offset=_int_arg('offset', 0),
        )
        return jsonify([serialize_song(song, songs_baseurl) for song in songs])

    def _scan_token_valid():
        if not admin_scan_token:
            return False
        token = request.headers.get('X-Scan-Token', '').strip()
        if not token:
            scheme, _, credentials = request.headers.get('Authorization', '').partition(' ')
            if scheme.lower() == 'bearer':
                token = credentials.strip()
        return hmac.compare_digest(token.encode('utf-8'), str(admin_scan_token).encode('utf-8'))

    @app.route('/api/admin/scan', methods=['POST'])
    def route_admin_scan():
        if not _scan_token_valid():
            app.logger.warning('Unauthorized scan attempt')
            return abort(403)
        if scanner is None:
            return jsonify({'status': 'error', 'message': 'No songs directory configured'}), 503

        summary = scanner.scan()
        app.logger.info("Song scan finished: %s", summary)
        return jsonify({'status': 'ok', 'summary': summary})

    return app


if __name__ == '__main__':
    import argparse

    parser = argparse.ArgumentParser(description='Run the song catalog API development server.')
    parser.add_argument('port', type=int, metavar='PORT', nargs='?', default=34801, help='Port to listen on.')
    parser.add_argument('-b', '--bind-address', default='localhost', help='Bind server to address.')
    parser.add_argument('-d', '--debug', action='store_true', help='Enable debug mode.')
    args = parser.parse_args()

    create_app().run(host=args.bind_address, port=args.port, debug=args.debug)
