import eventlet
eventlet.monkey_patch()

import logging

import homies_config
from HomiesChat import create_app

logging.basicConfig(level=getattr(logging, homies_config.LOG_LEVEL, logging.INFO),
                    format='%(asctime)s - %(levelname)s - %(message)s')

app, socketio = create_app()


def main():
    app.logger.info("DB: %s", app.config["DB_PATH"])
    app.logger.info("Backups: %s", app.config["BACKUP_DIR"])
    if not app.config["BLOB_STORE_URL"]:
        app.logger.warning("BLOB_STORE_URL not set; secondary store disabled, only SQLite and local backups will be used")
    socketio.run(app, host=app.config["HOST"], port=app.config["PORT"], debug=False)


# ----- run -----
if __name__ == "__main__":
    main()
