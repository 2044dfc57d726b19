SERVICE_NAME = "board-app"

DEFAULT_REGION = "eu-west-1"
AVAILABILITY_ZONE_SUFFIXES = ("a", "b", "c")

# Network
VPC_CIDR = "10.0.0.0/16"
SUBNET_CIDRS = ("10.0.0.0/24", "10.0.1.0/24", "10.0.2.0/24")
ANY_IPV4_CIDR = "0.0.0.0/0"
ALL_PROTOCOLS = "-1"

# Database
DB_ENGINE = "postgres"
DB_ENGINE_VERSION = "14.6"
DB_PARAMETER_FAMILY = "postgres14"
DB_INSTANCE_CLASS = "db.t4g.micro"
DB_ALLOCATED_STORAGE = 10
DB_PORT = 5432
DB_NAME = "postgres"
DB_USERNAME = "postgres"
DB_BACKUP_RETENTION_DAYS = 7

# Generated database password
DB_PASSWORD_LENGTH = 16
# RDS rejects "@", "/", "\"" and spaces in master passwords.
DB_PASSWORD_OVERRIDE_SPECIAL = "#"

# Compute
FUNCTION_TIMEOUT_SECONDS = 600
LAMBDA_SERVICE_PRINCIPAL = "lambda.amazonaws.com"
API_GATEWAY_SERVICE_PRINCIPAL = "apigateway.amazonaws.com"
INVOKE_FUNCTION_ACTION = "lambda:InvokeFunction"
BASIC_EXECUTION_POLICY_ARN = (
    "arn:aws:iam::aws:policy/service-role/AWSLambdaBasicExecutionRole"
)
VPC_ACCESS_EXECUTION_POLICY_ARN = (
    "arn:aws:iam::aws:policy/service-role/AWSLambdaVPCAccessExecutionRole"
)
LAMBDA_ASSUME_ROLE_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Action": "sts:AssumeRole",
            "Principal": {"Service": LAMBDA_SERVICE_PRINCIPAL},
            "Effect": "Allow",
            "Sid": "",
        }
    ],
}

# Gateway
GATEWAY_PROTOCOL = "HTTP"
GATEWAY_SOURCE_ARN_SUFFIX = "/*/*"

# Artifacts
ARTIFACT_STAGING_DIR = ".artifacts"
ARTIFACT_CHUNK_SIZE = 64 * 1024

# CDK context keys
CONTEXT_STACKS_KEY = "board:stacks"
CONTEXT_STATE_KEY = "board:state"
