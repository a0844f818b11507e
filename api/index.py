from api.routes import create_app

# Serverless entry point
app = create_app()
