"""
Channel Providers — one adapter per external delivery service.

    twilio    SMS     (Twilio REST)
    sendgrid  email   (SendGrid v3)
    fcm       push    (Firebase Cloud Messaging HTTP v1)
    slack     chat    (Slack Web API)
    in_app    in-app  (in-memory inbox)
"""
