import os

from app.main import app

if __name__ == "__main__":
    # app.main creates the data directories and the SQLite schema on import.
    # SSE sync streams need a threaded server; PORT/HOST come from the platform.
    app.run(
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", 8080)),
        threaded=True,
    )
