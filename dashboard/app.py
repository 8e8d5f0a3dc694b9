import os
from typing import Optional

from flask import Flask, jsonify, render_template


def create_app(allocator, log_file: Optional[str] = None) -> Flask:
    """Dashboard over a running rogue server's lease allocator."""
    app = Flask(__name__)
    app.config['LOG_FILE'] = log_file

    @app.route('/')
    def index():
        return render_template('index.html', pool=allocator.snapshot())

    @app.route('/api/leases')
    def get_leases():
        return jsonify(allocator.lease_list())

    @app.route('/api/pool')
    def get_pool():
        return jsonify(allocator.snapshot())

    @app.route('/api/logs')
    def get_logs():
        # Last 100 lines of the server log
        path = app.config['LOG_FILE']
        if path and os.path.exists(path):
            with open(path, 'r') as f:
                lines = f.readlines()
                return jsonify(lines[-100:])
        return jsonify([])

    @app.route('/api/status')
    def get_status():
        pool = allocator.snapshot()
        return jsonify({'online': True, 'exhausted': pool['exhausted']})

    return app
