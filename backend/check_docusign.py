#!/usr/bin/env python3
"""
Check the DocuSign configuration before starting the server
Validates the environment, requests a JWT token and lists the accounts it can reach
"""
import os
import sys

from docusign_esign import ApiClient
from dotenv import load_dotenv

# Add current directory to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config import ConfigError, REQUIRED_VARS, load_config, normalize_private_key, PEM_HEADERS
from docusign_client import ConsentRequiredError, DocuSignClient, DocuSignError


def check_environment(environ):
    """Print one line per required variable; return the names that are missing or invalid"""
    print("Checking environment variables:")
    problems = []
    for name in REQUIRED_VARS:
        value = environ.get(name)
        if not value:
            print(f"  ✗ {name}: NOT SET")
            problems.append(name)
        elif name == 'DOCUSIGN_PRIVATE_KEY':
            key = normalize_private_key(value)
            valid = any(header in key for header in PEM_HEADERS)
            print(f"  {'✓' if valid else '✗'} {name}: {'Valid format' if valid else 'Invalid format'}")
            if not valid:
                problems.append(name)
        else:
            preview = value[:20] + '...' if len(value) > 20 else value
            print(f"  ✓ {name}: {preview}")
    return problems


def print_consent_help(config, consent_url):
    print("\nUser consent is required for JWT authentication.")
    print("\nMethod 1 - DocuSign Admin:")
    print(f"  1. Go to: https://admin{'demo' if config.is_demo else ''}.docusign.com")
    print("  2. Navigate to: Apps and Keys")
    print(f"  3. Find the app with Integration Key: {config.integration_key}")
    print('  4. Click "Actions" -> "Grant Admin Consent"')
    print("\nMethod 2 - Consent URL:")
    print(f"  {consent_url}")
    print("\nAfter granting consent, run this check again.")


def main():
    load_dotenv()

    print("Testing DocuSign configuration...\n")
    problems = check_environment(os.environ)
    if problems:
        print(f"\n✗ Configuration incomplete. Missing or invalid variables: {', '.join(problems)}")
        return 1

    try:
        config = load_config(os.environ)
    except ConfigError as e:
        print(f"\n✗ {e}")
        return 1

    print("\n✓ All environment variables are set correctly\n")
    print("Requesting JWT token...")

    client = DocuSignClient(config)
    try:
        access_token = client.get_access_token()
    except ConsentRequiredError as e:
        print(f"\n✗ DocuSign API test failed: {e.message}")
        print_consent_help(config, e.consent_url)
        return 1
    except DocuSignError as e:
        print(f"\n✗ DocuSign API test failed: {e.message}")
        if 'invalid_client' in e.message or e.error_code == 'invalid_client':
            print("  - Check your Integration Key")
            print("  - Verify your User ID")
            print("  - Ensure your RSA public key is registered in DocuSign")
        elif e.status == 400:
            print("  Verify your Integration Key, User ID and Account ID")
        return 1

    print("✓ JWT token obtained successfully!")

    try:
        api_client = ApiClient()
        api_client.set_oauth_host_name(config.oauth_host)
        user_info = api_client.get_user_info(access_token)
        print("Account information:")
        for index, account in enumerate(user_info.accounts or [], start=1):
            print(f"  Account {index}: {account.account_name} ({account.account_id})")
            print(f"  Base URI: {account.base_uri}")
    except Exception as e:
        # a valid token is enough for the server to work
        print(f"Could not retrieve user info ({e}), but the JWT token is valid")

    print("\n✓ DocuSign configuration test completed successfully!")
    return 0


if __name__ == '__main__':
    sys.exit(main())
