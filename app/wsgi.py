from app.portcall import create_app

app = create_app()
