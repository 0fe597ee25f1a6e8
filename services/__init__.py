# Services are imported from their modules directly (services.session,
# services.mfa, ...); the registry wires them together per process.
