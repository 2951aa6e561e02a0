"""FleetForge: コーディングエージェントのプロセス監督とSpawn流量制御"""

__version__ = "0.1.0"
