from app.eventpass import create_app

app = create_app()
