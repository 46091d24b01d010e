"""Academy IAM Flask Application Package.

To use the Flask app:
    from academy_iam.flask_app import app

To use the Firebase credential services:
    from academy_iam.core.firebase import CredentialProvider, FirebaseClient

To use the synchronizer:
    from academy_iam.core.synchronizer import IdentitySynchronizer
"""
# Note: We don't import flask_app by default to avoid Flask dependency
# for CLI scripts that only use academy_iam.core
