from partsmarket import create_app

app = create_app()
