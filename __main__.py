import pulumi
from awsclassic import AWSResourceBuilder
from config import load_config, to_config
from revisions import build_revision, select_revision

def main():
    # Load YAML configuration.
    config_data = load_config("config.yaml")
    settings = to_config(config_data)

    try:
        revision = select_revision(settings)
        descriptor = build_revision(revision, settings)
        pulumi.log.info(f"Selected stack revision {revision}")
        builder = AWSResourceBuilder(settings, descriptor)
    except Exception as e:
        pulumi.log.error(f"Failed to initialize AWSResourceBuilder: {e}")
        raise

    try:
        builder.build()
    except Exception as e:
        pulumi.log.error(f"Failed during resource build: {e}")
        raise

    # Export resource IDs if available.
    for name, resource in builder.resources.items():
        try:
            pulumi.export(name, resource.id)
        except Exception as e:
            pulumi.log.warn(f"Failed to export resource '{name}': {e}")

    for name, value in builder.outputs.items():
        pulumi.export(name, value)

if __name__ == "__main__":
    main()
