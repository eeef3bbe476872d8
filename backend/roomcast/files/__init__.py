"""Chat attachments: upload policy and disk-backed blob storage."""
