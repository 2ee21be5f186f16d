from app.qrms import create_app

app = create_app()
