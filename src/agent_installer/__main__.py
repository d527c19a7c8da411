from agent_installer.cli.main import cli

if __name__ == "__main__":
    cli()
