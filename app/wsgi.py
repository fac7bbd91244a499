from app.clubadmin import create_app

app = create_app()
