from feishubridge.cli.commands import app

app()
