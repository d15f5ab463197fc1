import yaml
import pulumi
from awsclassic import AWSResourceBuilder
from config import load_config
from graph import build_graph

def main():
    # Load YAML configuration; account and region may come from the environment.
    try:
        config = load_config("config.yaml")
    except Exception as e:
        pulumi.log.error(f"Failed to load configuration: {e}")
        raise

    try:
        graph = build_graph(config)
    except Exception as e:
        pulumi.log.error(f"Failed to build resource graph: {e}")
        raise

    pulumi.log.info(f"Resource plan for {config.deployment_id}:\n{yaml.safe_dump(graph.describe(), sort_keys=False)}")

    try:
        builder = AWSResourceBuilder(config)
        builder.build(graph)
    except Exception as e:
        pulumi.log.error(f"Failed during resource build: {e}")
        raise

if __name__ == "__main__":
    main()
