"""
Entry point for Flask.

Usage (from project root):

    flask --app run.py db upgrade      # or: flask --app run.py shell -> db.create_all()
    flask --app run.py seed-roles
    flask --app run.py seed-demo
    flask --app run.py --debug run

"""

from procurement_flow import create_app

# WSGI application object. `flask run` looks for this `app` variable.
app = create_app()

if __name__ == "__main__":
    # Dev only; use `flask run` or a WSGI server in production.
    app.run(debug=True)
