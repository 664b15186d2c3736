"""
Identity provider server
------------------------
OAuth 2.0 authorization server with a single-table token store and
RFC 8693 token exchange governed by per-client policies.

Stack:
- Flask
- Authlib (authorization server)
- SQLAlchemy (SQLite by default, any SQLAlchemy URL via DATABASE_URL)

Run:
  python3 -m venv .venv && source .venv/bin/activate
  pip install -e .
  ADMIN_TOKEN=change-me python server.py  # starts on http://127.0.0.1:8000

Configuration is read from the environment (see idp_core.config.Settings).
"""
from __future__ import annotations

import os

from idp_core import create_app

app = create_app()

if __name__ == '__main__':
    host = os.environ.get('HOST', '127.0.0.1')
    port = int(os.environ.get('PORT', '8000'))
    app.run(debug=os.environ.get('FLASK_DEBUG') == '1', host=host, port=port)
