# Core configuration, database and cross-cutting helpers
