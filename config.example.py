# Copy this file to config.py and adjust the values.
# Environment variables with the same names override these settings.

# MongoDB connection. Multi-document transactions need a replica set,
# a single-node replica set is enough.
MONGO = {
    'uri': 'mongodb://127.0.0.1:27017/karaoke?replicaSet=rs0',
    'database': 'karaoke',
    'collection': 'song',
}

# Root directory of the UltraStar song library.
SONGS_DIR = '/srv/karaoke/songs'

# Leading path components removed from stored media paths, so that
# /srv/karaoke/songs/x/y.mp3 becomes karaoke/songs/x/y.mp3 with 2.
STRIP_COMPONENTS = 2

# URL prefix under which the web server exposes the stripped media paths.
SONGS_BASEURL = '/media/'

# ffprobe executable used to measure audio durations.
FFPROBE = 'ffprobe'

# Token required by POST /api/admin/scan.
ADMIN_SCAN_TOKEN = 'change-me'
