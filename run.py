"""
Entry point for Flask.

Usage (from project root):

    flask --app run.py --debug run

Periodic sweeps (run from cron or a systemd timer on a fixed interval):

    flask --app run.py sweep-quotes
    flask --app run.py sweep-invoices
    flask --app run.py renew-subscriptions

"""

from billing import create_app

# WSGI application object. `flask run` and WSGI servers look for this `app` variable.
app = create_app()

if __name__ == "__main__":
    # For direct `python run.py` usage (dev only).
    app.run(debug=True)
